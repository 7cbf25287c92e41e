"""Type-hierarchy facts derived from the metadata store and host introspection.

:class:`Reflector` answers questions such as "which properties of this class
must be injected?" or "what does its constructor need?" by combining
:class:`~keel.metadata.MetadataStore` lookups with the class MRO. Answers are
cached per ``(type, query)`` until :meth:`Reflector.clear_cache` is called.
"""

import inspect
import weakref
from enum import Enum
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

from .analysis import DependencyRequest, InjectionDeclaration, analyze_callable_dependencies
from .constants import INJECT_CONSTRUCTOR, INJECT_PROPERTY
from .metadata import MetadataStore, default_store


class MemberKind(str, Enum):
    METHOD = "method"
    ACCESSOR = "accessor"
    FIELD = "field"


class Reflector:
    """Derives higher-level facts about classes.

    Args:
        store: The metadata store to query. Defaults to the process store.
    """

    def __init__(self, store: Optional[MetadataStore] = None) -> None:
        self._store = store if store is not None else default_store()
        self._cache: "weakref.WeakKeyDictionary[type, Dict[Hashable, Any]]" = weakref.WeakKeyDictionary()

    @property
    def store(self) -> MetadataStore:
        return self._store

    def _cached(self, cls: Any, query: Hashable, compute: Callable[[], Any]) -> Any:
        if not isinstance(cls, type):
            return compute()
        bucket = self._cache.get(cls)
        if bucket is None:
            bucket = {}
            self._cache[cls] = bucket
        if query not in bucket:
            bucket[query] = compute()
        return bucket[query]

    def clear_cache(self, cls: Optional[type] = None) -> None:
        """Invalidate cached answers for *cls* and its subclasses, or for every type if omitted."""
        if cls is None:
            self._cache = weakref.WeakKeyDictionary()
            return
        for cached in list(self._cache.keys()):
            if cls in cached.__mro__:
                self._cache.pop(cached, None)

    def ancestry(self, cls: type) -> Tuple[type, ...]:
        """Return *cls* and its bases in MRO order, without ``object``."""
        return tuple(k for k in inspect.getmro(cls) if k is not object)

    def injection_declarations(self, cls: type) -> Tuple[InjectionDeclaration, ...]:
        """Collect property injection declarations along the MRO.

        Each level contributes the declarations registered directly on it.
        When several levels declare the same member, the most-derived one wins.
        """
        def compute() -> Tuple[InjectionDeclaration, ...]:
            merged: Dict[str, InjectionDeclaration] = {}
            for level in self.ancestry(cls):
                declared = self._store.get(INJECT_PROPERTY, level) or {}
                for member, decl in declared.items():
                    if member not in merged:
                        merged[member] = decl
            return tuple(merged.values())

        return self._cached(cls, "injection_declarations", compute)

    def constructor_dependencies(self, cls: type) -> Tuple[DependencyRequest, ...]:
        """Return what *cls* needs to be constructed.

        The first MRO level that either carries explicit constructor metadata
        or defines its own ``__init__`` decides.
        """
        def compute() -> Tuple[DependencyRequest, ...]:
            for level in self.ancestry(cls):
                declared = self._store.get(INJECT_CONSTRUCTOR, level)
                if declared is not None:
                    return tuple(declared)
                if "__init__" in vars(level):
                    return analyze_callable_dependencies(level)
            return ()

        return self._cached(cls, "constructor_dependencies", compute)

    def is_constructible(self, obj: Any) -> bool:
        def compute() -> bool:
            if not inspect.isclass(obj):
                return False
            if inspect.isabstract(obj):
                return False
            return not getattr(obj, "_is_protocol", False)

        return self._cached(obj, "is_constructible", compute)

    def member_kind(self, cls: type, member: str) -> Optional[MemberKind]:
        def compute() -> Optional[MemberKind]:
            try:
                attr = inspect.getattr_static(cls, member)
            except AttributeError:
                for level in inspect.getmro(cls):
                    if member in getattr(level, "__annotations__", {}):
                        return MemberKind.FIELD
                return None
            if isinstance(attr, (staticmethod, classmethod)) or inspect.isfunction(attr):
                return MemberKind.METHOD
            if isinstance(attr, property) or (
                hasattr(attr, "__get__") and (hasattr(attr, "__set__") or hasattr(attr, "__delete__"))
            ):
                return MemberKind.ACCESSOR
            return MemberKind.FIELD

        return self._cached(cls, ("member_kind", member), compute)

    def metadata_members(self, cls: type) -> List[str]:
        """Names of members declared on *cls* itself that carry metadata."""
        own = set(vars(cls)) | set(getattr(cls, "__annotations__", {}))
        return [m for m in self._store.members(cls) if m in own]

    def all_metadata(self, entity: Any, member: Optional[str] = None) -> Dict[Any, Any]:
        return self._store.items(entity, member)

    def copy_metadata(self, source: Any, target: Any, source_member: Optional[str] = None,
                      target_member: Optional[str] = None) -> None:
        for key, value in self._store.items(source, source_member).items():
            self._store.set(key, value, target, target_member)
        if isinstance(target, type):
            self.clear_cache(target)

    def merge_metadata(self, target: Any, member: Optional[str], *sources: Any) -> None:
        for source in sources:
            self.copy_metadata(source, target, member, member)
