"""Backend utilities"""
from .supabase_client import get_supabase_client, get_registry_store
from .auth import get_current_user, require_staff, resolve_actor

__all__ = ["get_supabase_client", "get_registry_store", "get_current_user", "require_staff", "resolve_actor"]
