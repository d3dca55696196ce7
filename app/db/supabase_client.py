"""Supabase client for the intelligence job store."""

from functools import lru_cache

from supabase import Client, create_client

from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """
    Return the shared Supabase client, created on first use.

    Uses the service role key, so row-level security does not apply to
    job store reads and writes.

    Raises:
        RuntimeError: If the client cannot be created
    """
    settings = get_settings()
    try:
        return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    except Exception as e:
        logger.error(f"Supabase client init failed for {settings.SUPABASE_URL}: {e}")
        raise RuntimeError(f"Failed to initialize Supabase client: {e}") from e
