"""Provider lookup and the fallback pairing between providers."""

from typing import Optional

import structlog

from tryon.core.config import Settings
from tryon.models.job import JobType, Provider
from tryon.services.exceptions import JobInputError
from tryon.services.providers.base import ProviderAdapter
from tryon.services.providers.fashn import FashnAdapter
from tryon.services.providers.gemini import GeminiAdapter
from tryon.services.providers.kie import KieAdapter
from tryon.services.providers.replicate import ReplicateAdapter

logger = structlog.get_logger()

# (failed provider, job type) -> provider that gets the single automatic retry
FALLBACK_PROVIDERS: dict[tuple[Provider, JobType], Provider] = {
    (Provider.KIE, JobType.VIRTUAL_TRYON): Provider.FASHN,
    (Provider.KIE, JobType.MODEL_SWAP): Provider.FASHN,
    (Provider.FASHN, JobType.VIRTUAL_TRYON): Provider.KIE,
    (Provider.FASHN, JobType.MODEL_SWAP): Provider.KIE,
}


class ProviderRegistry:
    """Configured adapters keyed by provider."""

    def __init__(self, adapters: dict[Provider, ProviderAdapter]):
        self._adapters = dict(adapters)

    def get(self, provider: Provider) -> ProviderAdapter:
        """Return the adapter for a provider.

        Raises:
            JobInputError: If the provider is not configured
        """
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise JobInputError(f"Provider {provider.value} is not configured")
        return adapter

    def fallback_for(self, provider: Provider, job_type: JobType) -> Optional[ProviderAdapter]:
        """Adapter for the automatic retry of a failed task, if the pair has one."""
        target = FALLBACK_PROVIDERS.get((provider, job_type))
        if target is None:
            return None
        adapter = self._adapters.get(target)
        if adapter is None or not adapter.supports(job_type):
            return None
        return adapter

    @property
    def providers(self) -> list[Provider]:
        return list(self._adapters)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        """Build adapters for every provider with credentials configured."""
        timeout = settings.provider_timeout_seconds
        adapters: dict[Provider, ProviderAdapter] = {}
        if settings.kie_api_key:
            adapters[Provider.KIE] = KieAdapter(
                settings.kie_api_key,
                base_url=settings.kie_base_url,
                model=settings.kie_model,
                timeout=timeout,
            )
        if settings.replicate_api_token:
            adapters[Provider.REPLICATE] = ReplicateAdapter(
                settings.replicate_api_token, timeout=timeout
            )
        if settings.fashn_api_key:
            adapters[Provider.FASHN] = FashnAdapter(
                settings.fashn_api_key,
                base_url=settings.fashn_base_url,
                model=settings.fashn_model_name,
                timeout=timeout,
            )
        if settings.gemini_api_key:
            adapters[Provider.GEMINI] = GeminiAdapter(
                settings.gemini_api_key, model=settings.gemini_model, timeout=timeout
            )

        logger.info("providers.configured", providers=[p.value for p in adapters])
        return cls(adapters)
