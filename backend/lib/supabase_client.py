"""
Supabase client and registry store singletons for the backend
"""
import os
from typing import Optional

from supabase import create_client, Client
from dotenv import load_dotenv

from class_registry.registry_store import RegistryStore

# Load environment variables
load_dotenv()
load_dotenv('../.env')  # Also try parent directory

_supabase_client: Optional[Client] = None
_registry_store: Optional[RegistryStore] = None


def get_supabase_client() -> Client:
    """Get or create Supabase client singleton"""
    global _supabase_client

    if _supabase_client is None:
        url = os.getenv("SUPABASE_URL")
        # Service role key bypasses row-level security; callers are restricted by require_staff
        key = os.getenv("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment")

        _supabase_client = create_client(url, key)

    return _supabase_client


def get_registry_store() -> RegistryStore:
    """Get or create the RegistryStore singleton backed by Supabase"""
    global _registry_store

    if _registry_store is None:
        _registry_store = RegistryStore(supabase_client=get_supabase_client())

    return _registry_store
