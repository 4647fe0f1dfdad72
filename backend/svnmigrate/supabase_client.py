"""
Supabase client factory.

Migration records are written by API processes and queue workers alike,
always with the service role key (no per-user RLS).
"""

from supabase import Client, create_client

from svnmigrate.core.config import Settings, get_settings


def supabase_configured(settings: Settings | None = None) -> bool:
    settings = settings or get_settings()
    return bool(settings.supabase_url and settings.supabase_key)


def get_service_client(settings: Settings | None = None) -> Client:
    """
    Get a Service Role client.

    Raises:
        ValueError: SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY missing
    """
    settings = settings or get_settings()
    if not supabase_configured(settings):
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    return create_client(settings.supabase_url, settings.supabase_key)
