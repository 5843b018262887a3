"""
Credit balance routes.

The client polls this while the user is away at the checkout.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import structlog

from exceptions import AppError
from models.credit import CreditAccount
from services.session_registry import get_session_registry

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/credits", tags=["Credits"])


@router.get("/{session_id}", response_model=CreditAccount)
async def get_credits(session_id: str):
    """Free allowance and purchased balance of the session's user."""
    try:
        pipeline = await get_session_registry().get_or_create(session_id)
        return await pipeline.admission.refresh()
    except AppError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    except Exception as e:
        logger.error("get_credits_failed", session_id=session_id, error=str(e))
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL_ERROR", "message": "Failed to fetch credits"}}
        )
