"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from tryon.models.credit import CreditTransaction, TransactionKind, UserCredits
from tryon.models.job import (
    FallbackState,
    InvalidStateTransition,
    Job,
    JobStatus,
    JobType,
    Provider,
)

__all__ = [
    "Job",
    "JobStatus",
    "JobType",
    "Provider",
    "FallbackState",
    "InvalidStateTransition",
    "UserCredits",
    "CreditTransaction",
    "TransactionKind",
]
