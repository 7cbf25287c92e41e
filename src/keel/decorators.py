# keel/decorators.py
from __future__ import annotations

from typing import Any, Callable, Optional, Tuple

from .analysis import DependencyRequest, Inject, InjectionDeclaration, Named, Tagged, requests_from_identifiers
from .constants import INJECT_CONSTRUCTOR, INJECT_PROPERTY, INJECTABLE
from .metadata import MetadataStore, default_store


def register_property(
    cls: type,
    member: str,
    identifier: Any,
    *,
    optional: bool = False,
    named: Optional[str] = None,
    tagged: Optional[Tuple[str, Any]] = None,
    factory: Optional[Callable[[], Any]] = None,
    store: Optional[MetadataStore] = None,
) -> InjectionDeclaration:
    """Declare that *member* of *cls* receives *identifier* after construction."""
    store = store if store is not None else default_store()
    decl = InjectionDeclaration(
        member=member, identifier=identifier, optional=optional, factory=factory, named=named, tagged=tagged
    )
    # own level only; inherited declarations are merged by the reflector
    declared = dict(store.get(INJECT_PROPERTY, cls) or {})
    declared[member] = decl
    store.set(INJECT_PROPERTY, declared, cls)
    return decl


def register_injectable(
    cls: type, dependencies: Optional[Tuple[Any, ...]] = None, *, store: Optional[MetadataStore] = None
) -> type:
    """Mark *cls* injectable, optionally pinning its constructor identifiers in parameter order."""
    store = store if store is not None else default_store()
    store.set(INJECTABLE, True, cls)
    if dependencies:
        store.set(INJECT_CONSTRUCTOR, requests_from_identifiers(cls, tuple(dependencies)), cls)
    return cls


class InjectedProperty:
    """Class-body marker produced by :func:`inject`.

    Registers its declaration when the owning class is created. Reading the
    attribute before the container has injected it raises ``AttributeError``.
    """

    def __init__(self, identifier: Any, *, optional: bool = False, named: Optional[str] = None,
                 tagged: Optional[Tuple[str, Any]] = None, factory: Optional[Callable[[], Any]] = None,
                 store: Optional[MetadataStore] = None):
        self.identifier = identifier
        self.optional = optional
        self.named = named
        self.tagged = tagged
        self.factory = factory
        self.store = store
        self.name: Optional[str] = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name
        register_property(owner, name, self.identifier, optional=self.optional, named=self.named,
                          tagged=self.tagged, factory=self.factory, store=self.store)

    def __get__(self, instance: Any, owner: Optional[type] = None) -> Any:
        if instance is None:
            return self
        raise AttributeError(f"'{type(instance).__name__}.{self.name}' has not been injected")


def inject(identifier: Any, *, named: Optional[str] = None, tagged: Optional[Tuple[str, Any]] = None,
           factory: Optional[Callable[[], Any]] = None, store: Optional[MetadataStore] = None) -> Any:
    return InjectedProperty(identifier, named=named, tagged=tagged, factory=factory, store=store)


def inject_optional(identifier: Any, *, named: Optional[str] = None, tagged: Optional[Tuple[str, Any]] = None,
                    factory: Optional[Callable[[], Any]] = None, store: Optional[MetadataStore] = None) -> Any:
    return InjectedProperty(identifier, optional=True, named=named, tagged=tagged, factory=factory, store=store)


def injectable(cls=None, *, dependencies: Tuple[Any, ...] = (), store: Optional[MetadataStore] = None):
    def dec(c):
        return register_injectable(c, tuple(dependencies), store=store)
    return dec(cls) if cls else dec


def is_injectable(cls: Any, *, store: Optional[MetadataStore] = None) -> bool:
    store = store if store is not None else default_store()
    return bool(store.get(INJECTABLE, cls))


__all__ = [
    "inject", "inject_optional", "injectable", "is_injectable",
    "register_property", "register_injectable",
    "InjectedProperty", "Inject", "Named", "Tagged", "DependencyRequest",
]
