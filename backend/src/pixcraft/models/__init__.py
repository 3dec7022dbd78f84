"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from pixcraft.models.account import Account
from pixcraft.models.credit_transaction import CreditTransaction, CreditTransactionKind
from pixcraft.models.generation import (
    GenerationParameters,
    GenerationRecord,
    GenerationStatus,
    InvalidStateTransition,
    credits_for_image_count,
)

__all__ = [
    "Account",
    "CreditTransaction",
    "CreditTransactionKind",
    "GenerationParameters",
    "GenerationRecord",
    "GenerationStatus",
    "InvalidStateTransition",
    "credits_for_image_count",
]
