"""In-memory TTL caching utilities.

Note: Cache is per-worker/replica, not shared across instances.

The generated-path cache closes a gap in the per-target generation lock: a
coroutine that waited on the lock re-reads the certificate path, but the
winner's session may not have committed yet. Once its link is issued the
winner records the public URL here before releasing the lock, so waiters in
the same worker persist and reuse it instead of rendering again.
"""

from cachetools import TTLCache

# Default cache settings
DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_SIZE = 1000

# Keyed by (certificate kind, target id), stores the persisted public URL
_generated_path_cache: TTLCache[tuple[str, str], str] = TTLCache(
    maxsize=DEFAULT_MAX_SIZE,
    ttl=DEFAULT_TTL_SECONDS,
)


def get_generated_path(key: tuple[str, str]) -> str | None:
    return _generated_path_cache.get(key)


def set_generated_path(key: tuple[str, str], path: str) -> None:
    _generated_path_cache[key] = path


def clear_all_caches() -> None:
    """Clear all caches. Useful for testing."""
    _generated_path_cache.clear()
