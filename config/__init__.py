"""
Configuration module.

Exports:
    settings: Application settings instance
    get_settings: Cached settings accessor
    get_supabase_client: Cached Supabase client
    check_connection: Database health check
"""

from config.settings import settings, get_settings, Settings
from config.database import (
    get_supabase_client,
    check_connection,
    SupabaseUnavailableError,
)

__all__ = [
    "settings",
    "get_settings",
    "Settings",
    "get_supabase_client",
    "check_connection",
    "SupabaseUnavailableError",
]
