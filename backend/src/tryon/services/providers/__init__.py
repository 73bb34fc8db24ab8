"""Provider adapters."""

from tryon.services.providers.base import ProviderAdapter, SubmitRequest, TaskRef
from tryon.services.providers.registry import FALLBACK_PROVIDERS, ProviderRegistry

__all__ = [
    "ProviderAdapter",
    "SubmitRequest",
    "TaskRef",
    "ProviderRegistry",
    "FALLBACK_PROVIDERS",
]
