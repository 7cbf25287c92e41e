"""Scope management for binding lifetimes.

Provides :class:`ContextVarScope`, :class:`ScopeManager`, and
:class:`ScopedCaches` -- the machinery that ties materialized instances to a
lifetime (singleton, transient, or request).
"""

import contextvars
import logging
from typing import Any, Dict, Iterator, Optional, Tuple

from .constants import KNOWN_SCOPES, SCOPE_REQUEST, SCOPE_SINGLETON, SCOPE_TRANSIENT
from .exceptions import ScopeError

_logger = logging.getLogger(__name__)

MISSING = object()


class ContextVarScope:
    """Scope boundary backed by a :class:`contextvars.ContextVar`.

    The scope is active while the var holds a scope ID; activation returns a
    token used to restore the previous ID.

    Args:
        var: The context variable that stores the scope identifier.
    """

    def __init__(self, var: contextvars.ContextVar) -> None:
        self._var = var

    def get_id(self) -> Any:
        return self._var.get()

    def activate(self, scope_id: Any) -> contextvars.Token:
        return self._var.set(scope_id)

    def deactivate(self, token: contextvars.Token) -> None:
        self._var.reset(token)


class InstanceCache:
    def __init__(self) -> None:
        self._instances: Dict[Any, Any] = {}

    def get(self, key, default=MISSING):
        return self._instances.get(key, default)

    def put(self, key, value):
        self._instances[key] = value

    def pop(self, key):
        self._instances.pop(key, None)

    def items(self):
        return list(self._instances.items())


class _NoCache(InstanceCache):
    def get(self, key, default=MISSING):
        return default

    def put(self, key, value):
        return

    def items(self):
        return []


class ScopeManager:
    """Tracks the active request boundary.

    Each manager owns its own ``ContextVar``, so containers do not see each
    other's requests, and asyncio tasks inherit the boundary of the task that
    spawned them.
    """

    def __init__(self) -> None:
        self._request = ContextVarScope(contextvars.ContextVar(f"keel_request_id_{id(self):x}", default=None))

    def get_id(self, name: str) -> Any:
        if name in (SCOPE_SINGLETON, SCOPE_TRANSIENT):
            return None
        if name != SCOPE_REQUEST:
            raise ScopeError(f"Unknown scope: {name}")
        return self._request.get_id()

    def activate(self, name: str, scope_id: Any) -> Optional[contextvars.Token]:
        if name in (SCOPE_SINGLETON, SCOPE_TRANSIENT):
            return None
        if name != SCOPE_REQUEST:
            raise ScopeError(f"Unknown scope: {name}")
        return self._request.activate(scope_id)

    def deactivate(self, name: str, token: Optional[contextvars.Token]) -> None:
        if name in (SCOPE_SINGLETON, SCOPE_TRANSIENT):
            return
        if name != SCOPE_REQUEST:
            raise ScopeError(f"Unknown scope: {name}")
        if token is not None:
            self._request.deactivate(token)


class ScopedCaches:
    """Instance storage for every scope.

    Maintains a singleton cache, one cache per request ID, and a no-op cache
    for transient scope.
    """

    def __init__(self) -> None:
        self._singleton = InstanceCache()
        self._by_scope: Dict[str, Dict[Any, InstanceCache]] = {}
        self._no_cache = _NoCache()

    def for_scope(self, scopes: ScopeManager, scope: str) -> InstanceCache:
        if scope == SCOPE_SINGLETON:
            return self._singleton
        if scope == SCOPE_TRANSIENT:
            return self._no_cache
        if scope not in KNOWN_SCOPES:
            raise ScopeError(f"Unknown scope: {scope}")

        sid = scopes.get_id(scope)
        if sid is None:
            raise ScopeError(
                f"Cannot resolve in scope '{scope}': no active scope ID. "
                f"Wrap the call in container.request_scope()."
            )

        bucket = self._by_scope.setdefault(scope, {})
        cache = bucket.get(sid)
        if cache is None:
            cache = InstanceCache()
            bucket[sid] = cache
        return cache

    def singleton(self) -> InstanceCache:
        return self._singleton

    def cleanup_scope(self, scope_name: str, scope_id: Any) -> None:
        bucket = self._by_scope.get(scope_name)
        if bucket and scope_id in bucket:
            cache = bucket.pop(scope_id)
            _logger.debug("Released %d %s-scoped instance(s) for %r", len(cache.items()), scope_name, scope_id)

    def evict(self, key: Any) -> None:
        self._singleton.pop(key)
        for bucket in self._by_scope.values():
            for cache in bucket.values():
                cache.pop(key)

    def all_items(self) -> Iterator[Tuple[Any, Any]]:
        for item in self._singleton.items():
            yield item
        for b in self._by_scope.values():
            for c in b.values():
                for item in c.items():
                    yield item
