"""Re-host provider result images in durable storage (Supabase Storage)."""

from datetime import datetime
from typing import Optional
from uuid import UUID

import httpx
import structlog

from tryon.core.timezone import epoch_millis
from tryon.services.exceptions import StorageError

logger = structlog.get_logger()


class ResultMaterializer:
    """Downloads short-lived provider result URLs and uploads them to a storage bucket.

    Object paths are deterministic per job (``{user}/results/result_{job}_{created_ms}.jpg``)
    and uploads upsert, so materializing the same job twice overwrites one object.
    """

    def __init__(
        self,
        supabase_url: str,
        service_key: str,
        bucket: str = "tryon-images",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize materializer.

        Args:
            supabase_url: Supabase project URL (e.g. https://xyz.supabase.co)
            service_key: Service role key used for storage writes
            bucket: Public bucket holding result images
            timeout: Timeout for the download and the upload, in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = supabase_url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.service_key)

    def storage_path(self, user_id: UUID, job_id: UUID, created_at: datetime) -> str:
        return f"{user_id}/results/result_{job_id}_{epoch_millis(created_at)}.jpg"

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    def is_durable(self, url: str) -> bool:
        """Whether a URL already points into our bucket."""
        return bool(self.base_url) and url.startswith(
            f"{self.base_url}/storage/v1/object/public/{self.bucket}/"
        )

    async def materialize(
        self, ephemeral_url: str, user_id: UUID, job_id: UUID, created_at: datetime
    ) -> str:
        """Copy a result into durable storage.

        Fails soft: any download or upload failure is logged and the original
        URL is returned so the job can still complete.

        Args:
            ephemeral_url: Provider result URL
            user_id: Job owner (path prefix)
            job_id: Job id (part of the object name)
            created_at: Job creation time (part of the object name)

        Returns:
            Public durable URL, or ephemeral_url on failure
        """
        if self.is_durable(ephemeral_url):
            return ephemeral_url
        if not self.configured:
            logger.warning(
                "materialize.skipped", job_id=str(job_id), reason="storage_not_configured"
            )
            return ephemeral_url

        path = self.storage_path(user_id, job_id, created_at)
        try:
            await self._transfer(ephemeral_url, path)
        except StorageError as e:
            logger.error(
                "materialize.failed",
                job_id=str(job_id),
                source_url=ephemeral_url,
                error=str(e),
            )
            return ephemeral_url

        durable_url = self.public_url(path)
        logger.info("materialize.stored", job_id=str(job_id), path=path)
        return durable_url

    async def _transfer(self, source_url: str, path: str) -> None:
        """Download source_url and upsert it at path.

        Raises:
            StorageError: Timeout, network failure or non-2xx on either leg
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport, follow_redirects=True
            ) as client:
                download = await client.get(source_url)
                if not download.is_success:
                    raise StorageError(f"Failed to download image: {download.status_code}")

                upload = await client.post(
                    f"{self.base_url}/storage/v1/object/{self.bucket}/{path}",
                    headers={
                        "Authorization": f"Bearer {self.service_key}",
                        "apikey": self.service_key,
                        "Content-Type": "image/jpeg",
                        "x-upsert": "true",
                    },
                    content=download.content,
                )
                if not upload.is_success:
                    raise StorageError(
                        f"Storage upload failed ({upload.status_code}): {upload.text[:200]}"
                    )
        except httpx.TimeoutException as e:
            raise StorageError(f"Request timeout after {self.timeout:g}s: {e}") from e
        except httpx.HTTPError as e:
            raise StorageError(f"Network error: {e}") from e
