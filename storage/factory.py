"""
Store factory.
Creates the configured backend; heavy client libraries load only when chosen.
"""

from typing import Optional

from config.settings import Settings, StoreBackend, get_settings
from storage.base import ScanStore, StoreError


def create_store(
    backend: Optional[StoreBackend] = None,
    settings: Optional[Settings] = None,
) -> ScanStore:
    """
    Create a store instance.

    Args:
        backend: Backend to create. If None, uses settings.store_backend
        settings: Application settings

    Raises:
        StoreError: If the backend is unknown or not configured
    """
    settings = settings or get_settings()
    backend = backend or settings.store_backend

    if backend == "memory":
        from storage.memory import InMemoryStore
        return InMemoryStore()

    elif backend == "supabase":
        from storage.supabase_store import SupabaseStore
        return SupabaseStore(settings)

    raise StoreError(f"Unknown store backend: {backend}. Available: memory, supabase")
