"""Bindings and the binding table.

This module defines :class:`Binding` (how one identifier is materialized) and
:class:`BindingTable` (the identifier-to-bindings registry owned by a
container).
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .constants import KNOWN_SCOPES, STRATEGY_CLASS, STRATEGY_CONSTANT, STRATEGY_FACTORY
from .exceptions import ScopeError
from .identifiers import KeyT


@dataclass(eq=False)
class Binding:
    """Registered strategy and scope for one identifier.

    Bindings compare by identity, so each one owns its own cache slot.

    Attributes:
        identifier: The key the binding is registered under.
        implementation: A constant, a factory callable, or a class.
        strategy: ``'constant'``, ``'factory'`` or ``'class'``.
        scope: ``'singleton'``, ``'transient'`` or ``'request'``.
        name: Optional name constraint, matched by ``get_named``.
        tags: Optional tag constraints, matched by ``get_tagged``.
    """

    identifier: KeyT
    implementation: Any
    strategy: str
    scope: str
    name: Optional[str] = None
    tags: Mapping[str, Any] = field(default_factory=dict)

    @property
    def constrained(self) -> bool:
        return self.name is not None or bool(self.tags)

    def matches(self, name: Optional[str] = None, tag: Optional[tuple] = None) -> bool:
        if name is not None:
            return self.name == name
        if tag is not None:
            key, value = tag
            return key in self.tags and self.tags[key] == value
        return not self.constrained


def infer_strategy(implementation: Any) -> str:
    if inspect.isclass(implementation):
        return STRATEGY_CLASS
    if callable(implementation):
        return STRATEGY_FACTORY
    return STRATEGY_CONSTANT


class BindingTable:
    """Identifier-to-bindings registry.

    Several bindings may share an identifier when they carry name or tag
    constraints. For unconstrained lookups the most recent unconstrained
    binding wins.
    """

    def __init__(self) -> None:
        self._bindings: Dict[KeyT, List[Binding]] = {}

    def add(self, identifier: KeyT, implementation: Any, scope: str, *, strategy: Optional[str] = None,
            name: Optional[str] = None, tags: Optional[Mapping[str, Any]] = None) -> Binding:
        if scope not in KNOWN_SCOPES:
            raise ScopeError(f"Unknown scope '{scope}'; expected one of {', '.join(KNOWN_SCOPES)}")
        binding = Binding(
            identifier=identifier,
            implementation=implementation,
            strategy=strategy or infer_strategy(implementation),
            scope=scope,
            name=name,
            tags=dict(tags or {}),
        )
        self._bindings.setdefault(identifier, []).append(binding)
        return binding

    def has(self, identifier: KeyT) -> bool:
        return bool(self._bindings.get(identifier))

    def find(self, identifier: KeyT, name: Optional[str] = None, tag: Optional[tuple] = None) -> Optional[Binding]:
        for binding in reversed(self._bindings.get(identifier, ())):
            if binding.matches(name, tag):
                return binding
        return None

    def all(self, identifier: KeyT) -> List[Binding]:
        return list(self._bindings.get(identifier, ()))

    def remove(self, identifier: KeyT) -> List[Binding]:
        return self._bindings.pop(identifier, [])

    def identifiers(self) -> List[KeyT]:
        return list(self._bindings)

    def __len__(self) -> int:
        return sum(len(b) for b in self._bindings.values())
