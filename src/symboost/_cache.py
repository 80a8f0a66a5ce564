"""Scoped caching for SymBoost.

A :class:`ScopedCache` keeps values alive exactly as long as the object they
are scoped to. The searcher uses one for the whole boosting run (final leaf
bins per data set), and every tree-CTR data set carries its own holder so
that its score helper state is built once and reused within a depth.
"""

from __future__ import annotations

import threading
import weakref
from typing import Any, Callable, Hashable, TypeVar

T = TypeVar("T")


class ScopedCache:
    """Cache of values keyed by ``(scope, key)``.

    Entries are dropped when the scope object is garbage collected.

    Example:
        >>> cache = ScopedCache()
        >>> helper = cache.cache(dataset, "scores", lambda: build(dataset))
        >>> helper is cache.cache(dataset, "scores", lambda: build(dataset))
        True
    """

    def __init__(self) -> None:
        self._scopes: weakref.WeakKeyDictionary[Any, dict[Hashable, Any]] = (
            weakref.WeakKeyDictionary()
        )
        self._lock = threading.Lock()

    def cache(self, scope: Any, key: Hashable, builder: Callable[[], T]) -> T:
        """Return the cached value for ``(scope, key)``, building it on first use."""
        with self._lock:
            entries = self._scopes.setdefault(scope, {})
            if key in entries:
                return entries[key]
        value = builder()
        with self._lock:
            return self._scopes.setdefault(scope, {}).setdefault(key, value)

    def put(self, scope: Any, key: Hashable, value: Any) -> None:
        """Store ``value`` under ``(scope, key)``, replacing any previous entry."""
        with self._lock:
            self._scopes.setdefault(scope, {})[key] = value

    def get(self, scope: Any, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._scopes.get(scope, {}).get(key, default)

    def contains(self, scope: Any, key: Hashable) -> bool:
        with self._lock:
            return key in self._scopes.get(scope, {})

    def reset(self, scope: Any) -> None:
        """Drop every entry of ``scope``."""
        with self._lock:
            self._scopes.pop(scope, None)
