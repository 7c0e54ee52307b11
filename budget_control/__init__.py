"""
Budget Control - Source Package

Core of a production budgeting system: project budgets split into
departments, time-boxed approval delegation, and the expense approval
lifecycle.

DESIGN PRINCIPLES:
1. Figures are always recomputed from the current snapshot
2. Authority is derived, never stored
3. Terminal states are terminal
4. Every mutation is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Budget Control Team"
