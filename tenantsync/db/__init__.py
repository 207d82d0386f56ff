"""Database clients and stores for tenantsync."""

from tenantsync.db.supabase import SupabaseClient

__all__ = ["SupabaseClient"]
