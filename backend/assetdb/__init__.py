# backend/assetdb/__init__.py
"""
Import ORM models from each app so that Alembic and
Base.metadata.create_all() see all tables.

The actual model classes are kept in assetdb/apps/*/models.py.
"""

from .apps.audit import models as audit_models                # activity trail
from .apps.consumables import models as consumables_models    # items, lots, containers, balances, ledger

__all__ = [
    "audit_models",
    "consumables_models",
]
