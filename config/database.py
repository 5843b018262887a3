"""
Supabase connection.

One cached client shared by the Supabase credit ledger, the Supabase
checkpoint store and listing draft persistence. Only touched when one
of those backends is configured.
"""

from functools import lru_cache

from supabase import create_client, Client
import structlog

from config.settings import settings

logger = structlog.get_logger(__name__)


class SupabaseUnavailableError(Exception):
    """Supabase is not configured or the client could not be built."""
    pass


@lru_cache()
def get_supabase_client() -> Client:
    """
    Cached Supabase client.

    Call get_supabase_client.cache_clear() to reconnect.

    Raises:
        SupabaseUnavailableError: If credentials are missing or the client fails
    """
    if not settings.supabase_configured:
        logger.error("supabase_not_configured")
        raise SupabaseUnavailableError("Supabase is not configured (SUPABASE_URL / SUPABASE_KEY)")

    try:
        logger.info("connecting_to_supabase", url=settings.supabase_url[:30] + "...")
        client = create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logger.error("supabase_connection_failed", error=str(e), error_type=type(e).__name__)
        raise SupabaseUnavailableError(f"Failed to connect to Supabase: {e}") from e

    logger.info("supabase_connected")
    return client


def check_connection() -> dict:
    """
    Database health for /health and startup.

    Returns:
        {"status": "not_configured" | "healthy" | "unhealthy", ...}
    """
    if not settings.supabase_configured:
        return {"status": "not_configured"}

    try:
        accounts = (
            get_supabase_client()
            .table("credit_accounts")
            .select("user_id", count="exact")
            .execute()
        )
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}

    return {"status": "healthy", "credit_accounts_count": accounts.count}
