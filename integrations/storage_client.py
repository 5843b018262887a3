"""
Image storage integration.

Pushes one photo per call to the storage endpoint and returns the remote
reference the AI service and listings use from then on.
"""

from typing import Optional, Protocol

import httpx
import structlog

from config import settings
from exceptions import ExternalServiceError

logger = structlog.get_logger(__name__)


class ImageStorage(Protocol):
    """Port for the storage upload endpoint."""

    async def upload(self, content: bytes, filename: str, content_type: str) -> str:
        """Upload bytes, return the remote ref."""
        ...


class HttpImageStorage:
    """
    Storage client for `POST binary -> {remoteRef}`.

    Transport and protocol failures are raised as ExternalServiceError so
    callers can isolate them per photo.
    """

    def __init__(
        self,
        upload_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.upload_url = upload_url or settings.storage_upload_url
        self.timeout = timeout or settings.upload_timeout_seconds
        self._client = client

    async def upload(self, content: bytes, filename: str, content_type: str = "image/jpeg") -> str:
        headers = {
            "Content-Type": content_type,
            "X-Filename": filename,
        }

        try:
            if self._client is not None:
                response = await self._client.post(self.upload_url, content=content, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.upload_url, content=content, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("storage_upload_timeout", filename=filename)
            raise ExternalServiceError("storage", f"Upload timed out: {filename}") from e
        except httpx.HTTPStatusError as e:
            logger.warning(
                "storage_upload_rejected",
                filename=filename,
                status_code=e.response.status_code
            )
            raise ExternalServiceError(
                "storage",
                f"Upload rejected: {filename}",
                details={"status_code": e.response.status_code}
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("storage_upload_failed", filename=filename, error=str(e))
            raise ExternalServiceError("storage", f"Upload failed: {filename}") from e

        remote_ref = data.get("remoteRef") if isinstance(data, dict) else None
        if not remote_ref:
            raise ExternalServiceError("storage", f"No remoteRef returned for {filename}")

        logger.debug("storage_upload_complete", filename=filename, remote_ref=remote_ref)
        return remote_ref
