"""Repository layer for database operations.

Repositories encapsulate all database queries, keeping the certificate
workflow focused on orchestration. This separation provides:
- Single source of truth for database operations
- Easier testing (repositories can be mocked)
- Reusable queries across certificate types
"""

from repositories.investment_repository import InvestmentRepository
from repositories.property_repository import PropertyRepository
from repositories.transaction_repository import TransactionRepository
from repositories.user_repository import UserRepository
from repositories.utils import is_uuid, log_slow_query

__all__ = [
    "InvestmentRepository",
    "PropertyRepository",
    "TransactionRepository",
    "UserRepository",
    "is_uuid",
    "log_slow_query",
]
