"""
Consumables module.

Multi-holder ledger and balance engine for consumable and chemical stock.
"""

from .router import router  # noqa: F401
from . import ledger, models  # noqa: F401
