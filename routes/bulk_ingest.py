"""
Bulk ingest API routes.

One live pipeline per session id (see services/session_registry.py).
The checkout redirect is not performed here: a run that falls short of
credits returns `checkout_url` and the client navigates to it.
"""

from typing import Optional

from fastapi import APIRouter, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse
import structlog

from exceptions import AppError
from models.asset import AssetFile
from models.bulk_ingest import PipelineResult, RegroupRequest, ReviewResponse
from models.item_group import ItemGroup, ItemGroupUpdate, ListingDraft
from models.progress import ProgressState
from services.listing_draft_service import get_listing_draft_service
from services.session_registry import get_session_registry

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/bulk-ingest", tags=["Bulk Ingest"])


# ===================
# EXCEPTION HANDLER
# ===================

def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )


def _persist(session_id: str, user_ref: Optional[str], drafts: list[ListingDraft]) -> None:
    get_listing_draft_service().save_drafts(user_ref or session_id, session_id, drafts)


# ===================
# PIPELINE
# ===================

@router.post("/{session_id}/run", response_model=PipelineResult)
async def run_pipeline(
    session_id: str,
    files: Optional[list[UploadFile]] = File(None),
    category_hint: Optional[str] = Form(None),
    batch_id: Optional[str] = Form(None)
):
    """
    Upload, group and describe a batch of photos.

    Raises:
        413: Batch over the size cap (nothing uploaded)
        409: A run is already in progress for this session
    """
    try:
        pipeline = await get_session_registry().get_or_create(session_id)

        assets = []
        for upload in files or []:
            assets.append(AssetFile(
                filename=upload.filename or "photo",
                content=await upload.read(),
                content_type=upload.content_type or "image/jpeg",
            ))

        return await pipeline.run(assets, category_hint=category_hint or None, batch_id=batch_id)

    except Exception as e:
        return handle_error(e)


@router.get("/{session_id}/progress", response_model=ProgressState)
async def get_progress(session_id: str):
    """Current phase, countdown and per-item status."""
    try:
        return get_session_registry().get(session_id).progress()
    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/resume", response_model=PipelineResult)
async def resume_pipeline(session_id: str, request: Request):
    """
    Continue after the external checkout.

    With `payment=success` in the query the resume runs immediately.
    Without it, one balance check is made against the checkpoint's
    baseline; if nothing changed the current result is returned.
    """
    try:
        pipeline = await get_session_registry().get_or_create(session_id)
        params = dict(request.query_params)

        if "payment" in params:
            return await pipeline.resume(params)

        result = await pipeline.poll_resume()
        if result is None:
            pipeline.watch_for_payment()
            return pipeline.current_result()
        return result

    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/cancel", response_model=PipelineResult)
async def cancel_pipeline(session_id: str):
    """Abandon the checkout and drop the checkpoint."""
    try:
        return await get_session_registry().get(session_id).cancel()
    except Exception as e:
        return handle_error(e)


# ===================
# REVIEW
# ===================

@router.post("/{session_id}/review/separate", response_model=ReviewResponse)
async def review_separate(
    session_id: str,
    persist: bool = Query(False, description="Save the drafts to listing_drafts")
):
    """One draft listing per item group."""
    try:
        pipeline = get_session_registry().get(session_id)
        review = pipeline.review()
        drafts = review.resolve_separate()
        if persist:
            _persist(session_id, pipeline.resumption.user_ref, drafts)
        return ReviewResponse(action="separate", drafts=drafts, groups=review.groups)
    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/review/bundle", response_model=ReviewResponse)
async def review_bundle(
    session_id: str,
    persist: bool = Query(False, description="Save the draft to listing_drafts")
):
    """Merge every group into one bundle listing."""
    try:
        pipeline = get_session_registry().get(session_id)
        draft = await pipeline.resolve_bundle()
        if persist:
            _persist(session_id, pipeline.resumption.user_ref, [draft])
        return ReviewResponse(action="bundle", drafts=[draft], groups=pipeline.review().groups)
    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/review/regroup", response_model=ReviewResponse)
async def review_regroup(session_id: str, body: RegroupRequest):
    """
    Replace the AI grouping with a manual partition.

    Raises:
        422: Partition does not cover every photo exactly once
    """
    try:
        review = get_session_registry().get(session_id).review()
        groups = review.regroup(body.partition)
        return ReviewResponse(action="regroup", groups=groups)
    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/review/manual-entry", response_model=ReviewResponse)
async def review_manual_entry(session_id: str):
    """Create manual-entry groups for photos left ungrouped."""
    try:
        pipeline = get_session_registry().get(session_id)
        review = pipeline.review()
        ungrouped = pipeline.result.ungrouped_indices if pipeline.result else []
        created = review.manual_entry_groups(ungrouped)
        return ReviewResponse(action="manual_entry", groups=created)
    except Exception as e:
        return handle_error(e)


@router.patch("/{session_id}/groups/{group_id}", response_model=ItemGroup)
async def update_group(session_id: str, group_id: str, data: ItemGroupUpdate):
    """
    Manually edit one group.

    Raises:
        404: Group not found
    """
    try:
        return get_session_registry().get(session_id).review().update_group(group_id, data)
    except Exception as e:
        return handle_error(e)


@router.delete("/{session_id}/groups/{group_id}", status_code=204)
async def discard_group(session_id: str, group_id: str):
    """Remove one group from the reviewable set."""
    try:
        get_session_registry().get(session_id).review().discard_group(group_id)
    except Exception as e:
        return handle_error(e)
