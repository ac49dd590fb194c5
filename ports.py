from __future__ import annotations

import copy
import fnmatch
import logging
import os
import threading
from typing import Any, Literal, Optional, Protocol

logger = logging.getLogger(__name__)

CacheTag = Literal["loan", "devices", "maintenance", "warranty", "return"]


class CacheInvalidationPort(Protocol):
    def invalidate(self, tag: CacheTag) -> None: ...


class AuditContextPort(Protocol):
    def set_before(self, snapshot: Any) -> None: ...

    def set_after(self, snapshot: Any) -> None: ...


class InMemoryCache:
    """Process-local key/value cache with ``{prefix}:{namespace}:{suffix}`` keys.

    ``invalidate(tag)`` purges every key whose text contains the tag, the
    same ``*tag*`` pattern purge a shared cache server would run.
    """

    def __init__(self, prefix: Optional[str] = None):
        self.prefix = prefix or os.getenv("APP_CACHE_PREFIX", "system")
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()

    def key(self, namespace: str, suffix: str | None = None) -> str:
        if suffix:
            return f"{self.prefix}:{namespace}:{suffix}"
        return f"{self.prefix}:{namespace}"

    def get(self, key: str) -> Any:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def invalidate(self, tag: CacheTag) -> None:
        pattern = f"{self.prefix}:*{tag}*"
        with self._lock:
            doomed = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
            for k in doomed:
                del self._data[k]
        logger.debug("cache_invalidated tag=%s keys=%s", tag, len(doomed))


class AuditContext:
    """Holds the before/after snapshots of one request's audited mutation."""

    def __init__(self) -> None:
        self.before: Any = None
        self.after: Any = None

    def set_before(self, snapshot: Any) -> None:
        self.before = copy.deepcopy(snapshot)

    def set_after(self, snapshot: Any) -> None:
        self.after = copy.deepcopy(snapshot)

    def changed_keys(self) -> list[str]:
        if not isinstance(self.before, dict) or not isinstance(self.after, dict):
            return []
        keys = set(self.before) | set(self.after)
        return sorted(k for k in keys if self.before.get(k) != self.after.get(k))

    def clear(self) -> None:
        self.before = None
        self.after = None


def invalidate_caches(cache: Optional[CacheInvalidationPort], *tags: CacheTag) -> None:
    """Best-effort purge after a commit. Failures are logged, never raised."""
    if cache is None:
        return
    for tag in tags:
        try:
            cache.invalidate(tag)
        except Exception:
            logger.warning("cache_invalidation_failed tag=%s", tag, exc_info=True)


def audit_before(audit: Optional[AuditContextPort], snapshot: Any) -> None:
    if audit is not None:
        audit.set_before(snapshot)


def audit_after(audit: Optional[AuditContextPort], snapshot: Any) -> None:
    if audit is not None:
        audit.set_after(snapshot)
