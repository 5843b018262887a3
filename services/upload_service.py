"""
Upload coordinator.

Pushes the photos of a bulk batch to the storage endpoint with a small
bounded concurrency. A failed photo is marked failed and the rest carry
on; only an oversized batch is rejected, and that happens before any
upload starts.
"""

import asyncio
from typing import Callable, Optional

import structlog

from config import settings
from exceptions import (
    AssetImmutableError,
    AssetNotFoundError,
    BatchTooLargeError,
    ExternalServiceError,
)
from integrations.storage_client import ImageStorage
from models.asset import AssetFile, AssetStatus, UploadedAsset, UploadProgressEvent

logger = structlog.get_logger(__name__)

ProgressListener = Callable[[UploadProgressEvent], None]


def set_asset_status(
    asset: UploadedAsset,
    status: AssetStatus,
    remote_ref: Optional[str] = None,
    error: Optional[str] = None
) -> None:
    """
    Move an asset to a new status.

    Raises:
        AssetImmutableError: If the asset is already uploaded
    """
    if asset.status == AssetStatus.UPLOADED:
        raise AssetImmutableError(asset.id, status.value)

    asset.status = status
    if remote_ref is not None:
        asset.remote_ref = remote_ref
    asset.error = error


class UploadService:
    """
    Upload coordinator.

    Core methods:
    - validate_batch: reject batches over the cap
    - upload: push every file, isolating per-file failures
    - remove_asset: explicit user deletion
    """

    def __init__(
        self,
        storage: ImageStorage,
        max_batch_size: Optional[int] = None,
        concurrency: Optional[int] = None
    ):
        self.storage = storage
        self.max_batch_size = max_batch_size or settings.max_batch_size
        self.concurrency = concurrency or settings.upload_concurrency
        self._listeners: list[ProgressListener] = []

    def subscribe(self, listener: ProgressListener) -> None:
        """Register a progress listener (e.g. the progress tracker)."""
        self._listeners.append(listener)

    def _emit(self, asset: UploadedAsset, completed: int, total: int) -> None:
        event = UploadProgressEvent(
            asset_id=asset.id,
            sequence_index=asset.sequence_index,
            status=asset.status,
            completed=completed,
            total=total,
        )
        for listener in self._listeners:
            listener(event)

    def validate_batch(self, count: int) -> None:
        """
        Check the batch size against the hard cap.

        Raises:
            BatchTooLargeError: If count exceeds the cap
        """
        if count > self.max_batch_size:
            logger.warning("bulk_batch_too_large", count=count, max_batch_size=self.max_batch_size)
            raise BatchTooLargeError(count, self.max_batch_size)

    async def upload(self, files: list[AssetFile]) -> list[UploadedAsset]:
        """
        Upload a batch of photos.

        Args:
            files: Photos in the order the user selected them

        Returns:
            One UploadedAsset per file, in input order, each either
            uploaded or failed

        Raises:
            BatchTooLargeError: Before any upload, if the batch is over the cap
        """
        self.validate_batch(len(files))

        assets = [
            UploadedAsset(source_filename=f.filename, sequence_index=i)
            for i, f in enumerate(files)
        ]
        if not assets:
            return assets

        logger.info("bulk_upload_started", count=len(assets), concurrency=self.concurrency)

        semaphore = asyncio.Semaphore(self.concurrency)
        total = len(assets)
        completed = 0

        async def upload_one(asset: UploadedAsset, file: AssetFile) -> None:
            nonlocal completed
            async with semaphore:
                set_asset_status(asset, AssetStatus.UPLOADING)
                self._emit(asset, completed, total)
                try:
                    remote_ref = await self.storage.upload(file.content, file.filename, file.content_type)
                except ExternalServiceError as e:
                    set_asset_status(asset, AssetStatus.FAILED, error=e.message)
                    logger.warning(
                        "asset_upload_failed",
                        filename=file.filename,
                        sequence_index=asset.sequence_index,
                        error=e.message
                    )
                else:
                    set_asset_status(asset, AssetStatus.UPLOADED, remote_ref=remote_ref)
                completed += 1
                self._emit(asset, completed, total)

        await asyncio.gather(*(upload_one(a, f) for a, f in zip(assets, files)))

        uploaded = sum(1 for a in assets if a.is_uploaded)
        logger.info(
            "bulk_upload_complete",
            uploaded=uploaded,
            failed=total - uploaded
        )
        return assets

    def remove_asset(self, assets: list[UploadedAsset], asset_id: str) -> list[UploadedAsset]:
        """
        Delete one asset at the user's request.

        Sequence indices of the remaining assets are kept so existing
        group memberships stay valid.

        Raises:
            AssetNotFoundError: If no asset has that id
        """
        remaining = [a for a in assets if a.id != asset_id]
        if len(remaining) == len(assets):
            raise AssetNotFoundError(asset_id)

        logger.info("asset_removed", asset_id=asset_id, remaining=len(remaining))
        return remaining
