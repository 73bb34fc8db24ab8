"""Repository layer for the try-on backend.

Provides data access abstractions for jobs and the credit ledger.
Each repository is self-contained; there are no base classes.
"""

from tryon.repositories.credit import CreditTransactionRepository, UserCreditsRepository
from tryon.repositories.job import JobRepository

__all__ = [
    "JobRepository",
    "UserCreditsRepository",
    "CreditTransactionRepository",
]
