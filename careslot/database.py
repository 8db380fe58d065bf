"""
Canonical database module - SINGLE SOURCE OF TRUTH for connections.

- asyncpg pool: the slot ledger (transactional, row-locking SQL)
- Supabase client: read access to the specialist directory

Only this module creates pools or Supabase clients; everything else asks it.
"""
import json
import logging
from typing import Dict, Optional

import asyncpg
import httpx
from supabase import Client, create_client
from supabase.client import ClientOptions

from careslot.config import BookingSettings, get_settings

logger = logging.getLogger(__name__)

# Timeouts (configured once, used throughout)
DEFAULT_DB_TIMEOUT = 30.0  # seconds
DEFAULT_CONNECT_TIMEOUT = 10.0  # seconds


# =============================================================================
# Supabase client (specialist directory)
# =============================================================================

_supabase_clients: Dict[str, Client] = {}


def _build_http_client() -> httpx.Client:
    """Build sync HTTP client with HTTP/1.1 and tight timeouts."""
    return httpx.Client(
        http2=False,
        timeout=httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=DEFAULT_DB_TIMEOUT,
            write=DEFAULT_DB_TIMEOUT,
            pool=DEFAULT_DB_TIMEOUT
        ),
        limits=httpx.Limits(
            max_connections=50,
            max_keepalive_connections=10,
            keepalive_expiry=30.0
        ),
        follow_redirects=True
    )


def create_supabase_client(schema: str = "public", settings: Optional[BookingSettings] = None) -> Client:
    """
    Create or get cached Supabase client for the given schema.

    Raises:
        ValueError: If SUPABASE_URL or a key is not configured
    """
    if schema in _supabase_clients:
        return _supabase_clients[schema]

    settings = settings or get_settings()
    if not settings.SUPABASE_URL or not settings.supabase_key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY/SUPABASE_ANON_KEY must be set")

    options = ClientOptions(
        schema=schema,
        auto_refresh_token=False,  # For server/service-role usage
        persist_session=False
    )
    client = create_client(settings.SUPABASE_URL, settings.supabase_key, options=options)

    try:
        http_client = _build_http_client()
        if hasattr(client, '_postgrest') and hasattr(client._postgrest, 'session'):
            client._postgrest.session = http_client
    except Exception as e:
        logger.warning(f"Could not apply HTTP optimization: {e}")

    _supabase_clients[schema] = client
    logger.info(f"Created Supabase client for schema: {schema}")
    return client


def clear_supabase_clients() -> None:
    """Drop cached clients (they hold no server-side state)."""
    _supabase_clients.clear()


# =============================================================================
# Database Pool (asyncpg for the slot ledger)
# =============================================================================

_db_pool: Optional[asyncpg.Pool] = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode json/jsonb columns to Python objects."""
    for type_name in ('json', 'jsonb'):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema='pg_catalog'
        )


async def init_db_pool(settings: Optional[BookingSettings] = None) -> asyncpg.Pool:
    """
    Initialize the asyncpg pool used by the slot ledger.

    Raises:
        ValueError: If DATABASE_URL is not configured
    """
    global _db_pool

    if _db_pool is not None:
        return _db_pool

    settings = settings or get_settings()
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL must be set for the postgres ledger backend")

    _db_pool = await asyncpg.create_pool(
        settings.DATABASE_URL,
        min_size=settings.DB_POOL_MIN_SIZE,
        max_size=settings.DB_POOL_MAX_SIZE,
        command_timeout=settings.DB_COMMAND_TIMEOUT,
        statement_cache_size=0,  # Disable for pgbouncer compatibility
        init=_init_connection
    )
    logger.info(
        f"Database connection pool initialized "
        f"(min={settings.DB_POOL_MIN_SIZE}, max={settings.DB_POOL_MAX_SIZE})"
    )
    return _db_pool


async def close_db_pool() -> None:
    """Close database connection pool."""
    global _db_pool

    if _db_pool is not None:
        await _db_pool.close()
        _db_pool = None
        logger.info("Database connection pool closed")
