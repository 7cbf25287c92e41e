"""Contextual bindings: "when X needs Y, give Z".

A contextual binding overrides the default binding of an identifier for one
consumer. Consumers are keyed by a string identity: a class by its
``__name__``, a string as-is, a :class:`~keel.identifiers.Token` by name.
So ``when(ReportService)`` and ``when("ReportService")`` are the same context.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .constants import KNOWN_SCOPES, SCOPE_TRANSIENT
from .exceptions import ContextualBindingValidationError
from .identifiers import KeyT, Token
from .scope import MISSING, ScopedCaches, ScopeManager

_logger = logging.getLogger(__name__)


class _NoOverride:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NO_OVERRIDE"

    def __bool__(self) -> bool:
        return False


NO_OVERRIDE = _NoOverride()


@dataclass(frozen=True)
class ContextualBinding:
    when: Any
    needs: KeyT
    give: Any
    scope: str = SCOPE_TRANSIENT


def context_key(context: Any) -> str:
    if isinstance(context, str):
        return context
    if isinstance(context, Token):
        return context.name
    if isinstance(context, type) or callable(context):
        name = getattr(context, "__name__", None)
        if name:
            return name
    return str(context)


class ContextualBindingManager:
    """Stores and resolves contextual overrides.

    Args:
        scopes: Provides the active request boundary for request-scoped
            overrides. A private manager is created if omitted.
        caches: Instance storage for singleton and request-scoped overrides.
    """

    def __init__(self, scopes: Optional[ScopeManager] = None, caches: Optional[ScopedCaches] = None) -> None:
        self._scopes = scopes if scopes is not None else ScopeManager()
        self._caches = caches if caches is not None else ScopedCaches()
        self._bindings: Dict[str, Dict[KeyT, ContextualBinding]] = {}

    @staticmethod
    def validate(binding: ContextualBinding) -> List[str]:
        problems: List[str] = []
        if binding.when is None or binding.when == "":
            problems.append("'when' (the consuming context) is required")
        if binding.needs is None or binding.needs == "":
            problems.append("'needs' (the requested identifier) is required")
        if binding.give is None:
            problems.append("'give' (the implementation) is required")
        if binding.scope not in KNOWN_SCOPES:
            problems.append(f"scope must be one of {', '.join(KNOWN_SCOPES)}, got {binding.scope!r}")
        return problems

    def register_binding(self, binding: ContextualBinding) -> None:
        """Store *binding*, replacing any binding for the same context and identifier.

        Raises:
            ContextualBindingValidationError: If the binding is malformed.
        """
        problems = self.validate(binding)
        if problems:
            raise ContextualBindingValidationError(problems)
        ckey = context_key(binding.when)
        self._caches.evict(self._cache_key(ckey, binding.needs))
        self._bindings.setdefault(ckey, {})[binding.needs] = binding
        _logger.debug("Registered contextual binding: when %s needs %s", ckey, binding.needs)

    def when(self, when: Any) -> "ContextualBindingBuilder":
        return ContextualBindingBuilder(self, when)

    def find(self, context: Any, identifier: KeyT) -> Optional[ContextualBinding]:
        if context is None:
            return None
        return self._bindings.get(context_key(context), {}).get(identifier)

    def resolve_contextual(self, context: Any, identifier: KeyT,
                           invoke: Optional[Callable[[Callable[..., Any]], Any]] = None) -> Any:
        """Return the override for *identifier* as seen by *context*, or ``NO_OVERRIDE``.

        Callable implementations are treated as factories and invoked through
        *invoke* (a plain call by default). Singleton results are reused per
        ``(context, identifier)``, request-scoped ones per request boundary.
        """
        binding = self.find(context, identifier)
        if binding is None:
            return NO_OVERRIDE
        if not callable(binding.give):
            return binding.give

        cache = self._caches.for_scope(self._scopes, binding.scope)
        cache_key = self._cache_key(context_key(context), identifier)
        cached = cache.get(cache_key)
        if cached is not MISSING:
            return cached
        value = invoke(binding.give) if invoke is not None else binding.give()
        cache.put(cache_key, value)
        return value

    def has_contextual_binding(self, context: Any, identifier: KeyT) -> bool:
        return self.find(context, identifier) is not None

    def bindings_for(self, context: Any) -> List[ContextualBinding]:
        return list(self._bindings.get(context_key(context), {}).values())

    def clear(self) -> None:
        for ckey, by_needs in self._bindings.items():
            for needs in by_needs:
                self._caches.evict(self._cache_key(ckey, needs))
        self._bindings.clear()

    @staticmethod
    def _cache_key(ckey: str, identifier: KeyT) -> Tuple[str, str, KeyT]:
        return ("contextual", ckey, identifier)


class ContextualBindingBuilder:
    def __init__(self, manager: ContextualBindingManager, when: Any) -> None:
        self._manager = manager
        self._when = when

    def needs(self, identifier: KeyT) -> "ContextualBindingNeedsBuilder":
        return ContextualBindingNeedsBuilder(self._manager, self._when, identifier)


class ContextualBindingNeedsBuilder:
    def __init__(self, manager: ContextualBindingManager, when: Any, needs: KeyT) -> None:
        self._manager = manager
        self._when = when
        self._needs = needs

    def give(self, implementation: Any) -> None:
        self._manager.register_binding(ContextualBinding(when=self._when, needs=self._needs, give=implementation))

    def give_scoped(self, implementation: Any, scope: str) -> None:
        self._manager.register_binding(
            ContextualBinding(when=self._when, needs=self._needs, give=implementation, scope=scope)
        )


__all__ = [
    "NO_OVERRIDE", "ContextualBinding", "ContextualBindingManager",
    "ContextualBindingBuilder", "ContextualBindingNeedsBuilder", "context_key",
]
