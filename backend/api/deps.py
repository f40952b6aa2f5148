"""
SlotOps API Dependencies

Dependency injection for the store adapter.
"""

from functools import lru_cache

from db.session import get_session_factory
from db.store import StoreAdapter


@lru_cache
def _default_store() -> StoreAdapter:
    return StoreAdapter(get_session_factory())


async def get_store() -> StoreAdapter:
    """Return the process-wide store adapter."""
    return _default_store()
