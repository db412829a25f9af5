# backend/fieldops/__init__.py
"""
Import ORM models from each app so that Alembic and
Base.metadata.create_all() see every table.

The model classes themselves live in fieldops/apps/*/models.py.
"""

from .apps.accounts import models as accounts_models    # users / locations
from .apps.warehouse import models as warehouse_models  # ledger rows, history, transfers
from .apps.orders import models as orders_models        # orders + settlement records

__all__ = [
    "accounts_models",
    "warehouse_models",
    "orders_models",
]
