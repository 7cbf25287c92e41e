"""Weakly-associated metadata storage.

:class:`MetadataStore` attaches ``key -> value`` entries to program entities
(classes, functions, instances), optionally scoped to a member name. Entities
are held through :class:`weakref.WeakKeyDictionary`, so the store never keeps
an entity alive; its entries disappear when the entity is collected.

Entity-scoped and member-scoped entries live in two independent layers: an
entry set on ``(entity, key)`` is never visible through
``(entity, member, key)`` and vice versa.
"""

import logging
import weakref
from typing import Any, Dict, Hashable, List, Optional, Union

from .exceptions import MetadataError
from .identifiers import Token

_logger = logging.getLogger(__name__)

MetaKey = Union[str, Token]


class MetadataStore:
    """Two-layer weak metadata store.

    Example:
        >>> store = MetadataStore()
        >>> class Service: ...
        >>> store.set("role", "db", Service)
        >>> store.get("role", Service)
        'db'
        >>> store.get("role", Service, "connect") is None
        True
    """

    def __init__(self) -> None:
        self._entity: "weakref.WeakKeyDictionary[Any, Dict[MetaKey, Any]]" = weakref.WeakKeyDictionary()
        self._members: "weakref.WeakKeyDictionary[Any, Dict[Hashable, Dict[MetaKey, Any]]]" = (
            weakref.WeakKeyDictionary()
        )
        self._ops = {"set": 0, "get": 0, "delete": 0, "clear": 0}

    def _lookup(self, entity: Any, member: Optional[Hashable]) -> Optional[Dict[MetaKey, Any]]:
        if entity is None:
            return None
        try:
            if member is None:
                return self._entity.get(entity)
            members = self._members.get(entity)
        except TypeError:
            return None
        if members is None:
            return None
        return members.get(member)

    def set(self, key: MetaKey, value: Any, entity: Any, member: Optional[Hashable] = None) -> None:
        """Store *value* under *key* for *entity* (or its *member*).

        Raises:
            MetadataError: If *entity* is ``None`` or cannot be weakly referenced.
        """
        if entity is None:
            raise MetadataError("Entity cannot be None")
        self._ops["set"] += 1
        try:
            if member is None:
                entries = self._entity.get(entity)
                if entries is None:
                    entries = {}
                    self._entity[entity] = entries
            else:
                members = self._members.get(entity)
                if members is None:
                    members = {}
                    self._members[entity] = members
                entries = members.setdefault(member, {})
        except TypeError as e:
            raise MetadataError(f"Cannot attach metadata to {type(entity).__name__} instance: {e}") from e
        entries[key] = value
        _logger.debug("Set metadata '%s' on %s%s", key, _entity_name(entity), f".{member}" if member is not None else "")

    def get(self, key: MetaKey, entity: Any, member: Optional[Hashable] = None, default: Any = None) -> Any:
        self._ops["get"] += 1
        entries = self._lookup(entity, member)
        if entries is None:
            return default
        return entries.get(key, default)

    def has(self, key: MetaKey, entity: Any, member: Optional[Hashable] = None) -> bool:
        entries = self._lookup(entity, member)
        return entries is not None and key in entries

    def delete(self, key: MetaKey, entity: Any, member: Optional[Hashable] = None) -> bool:
        self._ops["delete"] += 1
        entries = self._lookup(entity, member)
        if entries is None or key not in entries:
            return False
        del entries[key]
        if not entries:
            self._prune(entity, member)
        return True

    def keys(self, entity: Any, member: Optional[Hashable] = None) -> List[MetaKey]:
        entries = self._lookup(entity, member)
        return list(entries) if entries else []

    def items(self, entity: Any, member: Optional[Hashable] = None) -> Dict[MetaKey, Any]:
        entries = self._lookup(entity, member)
        return dict(entries) if entries else {}

    def members(self, entity: Any) -> List[Hashable]:
        """Return the member names of *entity* that carry metadata."""
        try:
            members = self._members.get(entity) if entity is not None else None
        except TypeError:
            return []
        return list(members) if members else []

    def clear(self, entity: Any, member: Optional[Hashable] = None) -> None:
        self._ops["clear"] += 1
        if self._lookup(entity, member) is not None:
            self._prune(entity, member)

    def clear_all(self) -> None:
        """Documented no-op.

        Entities are held weakly and cannot be enumerated, so there is nothing
        to walk. Entries go away with their entities. Only statistics are reset.
        """
        _logger.warning(
            "clear_all() is not supported by weak metadata storage; entries are released with their entities"
        )
        self._ops = {"set": 0, "get": 0, "delete": 0, "clear": 0}

    def stats(self) -> Dict[str, Any]:
        return {
            "entities": len(self._entity),
            "member_entities": len(self._members),
            "operations": dict(self._ops),
        }

    def _prune(self, entity: Any, member: Optional[Hashable]) -> None:
        if member is None:
            self._entity.pop(entity, None)
            return
        members = self._members.get(entity)
        if members is None:
            return
        members.pop(member, None)
        if not members:
            self._members.pop(entity, None)


def _entity_name(entity: Any) -> str:
    return getattr(entity, "__qualname__", type(entity).__name__)


_default_store = MetadataStore()


def default_store() -> MetadataStore:
    """Return the process-wide store used by the declaration decorators."""
    return _default_store


def set_default_store(store: MetadataStore) -> None:
    global _default_store
    _default_store = store
