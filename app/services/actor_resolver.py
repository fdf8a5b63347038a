import logging
import threading
import time
from collections.abc import Callable
from functools import lru_cache

from app.services.google_workspace_client import DirectoryLookup, GoogleWorkspaceError

logger = logging.getLogger(__name__)


class ActorResolver:
    """Maps an event subject such as ``users/1234`` to the owner's email.

    Lookup failures are not fatal: they are logged and resolve to ``None``.
    Only successful lookups are cached.
    """

    def __init__(
        self,
        directory: DirectoryLookup | None,
        cache_ttl_seconds: float = 3600.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.directory = directory
        self.cache_ttl_seconds = cache_ttl_seconds
        self._monotonic = monotonic
        self._cache: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def resolve_email(self, actor_ref: str | None) -> str | None:
        cleaned_ref = (actor_ref or "").strip()
        if not cleaned_ref or self.directory is None:
            return None

        cached_email = self._get_cached(cleaned_ref)
        if cached_email:
            return cached_email

        try:
            email = self.directory.resolve_user_email(cleaned_ref)
        except GoogleWorkspaceError as exc:
            logger.warning("Directory lookup failed actor_ref=%s error=%s", cleaned_ref, exc)
            return None

        if not email:
            logger.warning("Directory lookup returned no email actor_ref=%s", cleaned_ref)
            return None

        normalized_email = email.strip().lower()
        with self._lock:
            self._cache[cleaned_ref] = (normalized_email, self._monotonic() + self.cache_ttl_seconds)
        return normalized_email

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _get_cached(self, actor_ref: str) -> str | None:
        with self._lock:
            entry = self._cache.get(actor_ref)
            if entry is None:
                return None
            email, expires_at = entry
            if expires_at <= self._monotonic():
                self._cache.pop(actor_ref, None)
                return None
            return email


@lru_cache
def get_actor_resolver(directory: DirectoryLookup | None, cache_ttl_seconds: float) -> ActorResolver:
    return ActorResolver(directory, cache_ttl_seconds=cache_ttl_seconds)


def clear_actor_resolver_cache() -> None:
    get_actor_resolver.cache_clear()
