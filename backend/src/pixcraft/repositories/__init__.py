"""Repository layer for the pixcraft backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from pixcraft.repositories.account import AccountRepository
from pixcraft.repositories.credit_transaction import CreditTransactionRepository
from pixcraft.repositories.generation import GenerationRepository

__all__ = [
    "AccountRepository",
    "CreditTransactionRepository",
    "GenerationRepository",
]
