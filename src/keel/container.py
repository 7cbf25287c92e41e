# keel/container.py
import contextvars
import inspect
import time
import uuid
import weakref
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple, Type, TypeVar, Union, overload

from .analysis import DependencyRequest, analyze_callable_dependencies
from .binding import Binding, BindingTable
from .constants import (
    CONTAINER,
    LOGGER,
    SCOPE_REQUEST,
    SCOPE_SINGLETON,
    SCOPE_TRANSIENT,
    STRATEGY_CLASS,
    STRATEGY_CONSTANT,
    STRATEGY_FACTORY,
)
from .contextual import NO_OVERRIDE, ContextualBindingBuilder, ContextualBindingManager
from .decorators import register_injectable, register_property
from .exceptions import AsyncResolutionError, BindingNotFoundError, CyclicDependencyError
from .identifiers import KeyT, Token, identifier_name
from .injection import PropertyInjectionResolver
from .metadata import MetadataStore, default_store
from .reflector import Reflector
from .scope import MISSING, ScopedCaches, ScopeManager

T = TypeVar("T")

_PRIMITIVES = (str, bytes, bytearray, int, float, complex, bool, type(None))


class _Frame:
    __slots__ = ("binding", "consumer")

    def __init__(self, binding: Optional[Binding], consumer: Any):
        self.binding = binding
        self.consumer = consumer


_resolution_stack: contextvars.ContextVar[Tuple[_Frame, ...]] = contextvars.ContextVar(
    "keel_resolution_stack", default=()
)


class DeferredProviderSource(Protocol):
    def provides(self, identifier: KeyT) -> bool: ...

    def load_deferred(self, identifier: KeyT) -> bool: ...


class Container:
    """Binding owner and resolver.

    Resolution order for :meth:`get`: a contextual override for the current
    consumer, then deferred-provider promotion if nothing is bound, then the
    binding itself (cached per scope), then property injection.

    The consumer is the explicit ``context`` argument or, when omitted, the
    class (or factory identifier) currently being built. The stack of
    consumers lives in a ``ContextVar``.

    Args:
        metadata: Store holding the injection declarations. Defaults to the
            process store.
        parent: Container to fall back to for identifiers not bound here.
    """

    def __init__(self, metadata: Optional[MetadataStore] = None, *, parent: Optional["Container"] = None) -> None:
        self._store = metadata if metadata is not None else default_store()
        if parent is not None and parent._store is self._store:
            self._reflector = parent._reflector
        else:
            self._reflector = Reflector(self._store)
        self._injector = PropertyInjectionResolver(self._reflector)
        self._bindings = BindingTable()
        self._scopes = parent._scopes if parent is not None else ScopeManager()
        self._caches = ScopedCaches()
        self._contextual = ContextualBindingManager(self._scopes, self._caches)
        self._parent = parent
        self._children: "weakref.WeakSet[Container]" = weakref.WeakSet()
        if parent is not None:
            parent._children.add(self)
        self._deferred_source: Optional[DeferredProviderSource] = None
        self._service_metadata: Dict[KeyT, Any] = {}
        self._created_at = time.time()
        self._resolve_count = 0
        self._cache_hits = 0
        self.constant(CONTAINER, self)
        self.constant(Container, self)

    @property
    def parent(self) -> Optional["Container"]:
        return self._parent

    @property
    def metadata(self) -> MetadataStore:
        return self._store

    @property
    def reflector(self) -> Reflector:
        return self._reflector

    @property
    def contextual(self) -> ContextualBindingManager:
        return self._contextual

    def attach_deferred_source(self, source: Optional[DeferredProviderSource]) -> None:
        self._deferred_source = source

    # -- registration -------------------------------------------------------

    def bind(self, identifier: KeyT, implementation: Any, scope: str = SCOPE_TRANSIENT, *,
             name: Optional[str] = None, tags: Optional[Mapping[str, Any]] = None,
             strategy: Optional[str] = None) -> Binding:
        binding = self._bindings.add(identifier, implementation, scope, strategy=strategy, name=name, tags=tags)
        LOGGER.debug("Bound %s -> %s [%s, %s]", identifier_name(identifier),
                     identifier_name(implementation) if binding.strategy != STRATEGY_CONSTANT else "<constant>",
                     binding.strategy, scope)
        return binding

    def singleton(self, identifier: KeyT, implementation: Any, **kwargs: Any) -> Binding:
        return self.bind(identifier, implementation, SCOPE_SINGLETON, **kwargs)

    def transient(self, identifier: KeyT, implementation: Any, **kwargs: Any) -> Binding:
        return self.bind(identifier, implementation, SCOPE_TRANSIENT, **kwargs)

    def request(self, identifier: KeyT, implementation: Any, **kwargs: Any) -> Binding:
        return self.bind(identifier, implementation, SCOPE_REQUEST, **kwargs)

    def constant(self, identifier: KeyT, value: Any, **kwargs: Any) -> Binding:
        return self.bind(identifier, value, SCOPE_SINGLETON, strategy=STRATEGY_CONSTANT, **kwargs)

    def unbind(self, identifier: KeyT) -> bool:
        removed = self._bindings.remove(identifier)
        for binding in removed:
            self._caches.evict(binding)
        return bool(removed)

    def rebind(self, identifier: KeyT, implementation: Any, scope: str = SCOPE_TRANSIENT, **kwargs: Any) -> Binding:
        self.unbind(identifier)
        return self.bind(identifier, implementation, scope, **kwargs)

    def when(self, context: Any) -> ContextualBindingBuilder:
        return self._contextual.when(context)

    def declare_property(self, cls: type, member: str, identifier: KeyT, **kwargs: Any) -> None:
        register_property(cls, member, identifier, store=self._store, **kwargs)
        self._reflector.clear_cache(cls)

    def declare_injectable(self, cls: type, dependencies: Optional[Tuple[Any, ...]] = None) -> None:
        register_injectable(cls, dependencies, store=self._store)
        self._reflector.clear_cache(cls)

    def set_metadata(self, identifier: KeyT, metadata: Any) -> None:
        self._service_metadata[identifier] = metadata

    def get_metadata(self, identifier: KeyT) -> Any:
        return self._service_metadata.get(identifier)

    # -- queries ------------------------------------------------------------

    def is_bound(self, identifier: KeyT) -> bool:
        if self._bindings.has(identifier):
            return True
        return self._parent is not None and self._parent.is_bound(identifier)

    def can_resolve(self, identifier: KeyT, context: Any = None) -> bool:
        consumer = context if context is not None else self._current_consumer()
        if consumer is not None and self._contextual.has_contextual_binding(consumer, identifier):
            return True
        if self._bindings.has(identifier):
            return True
        if self._deferred_source is not None and self._deferred_source.provides(identifier):
            return True
        return self._parent is not None and self._parent.can_resolve(identifier)

    # -- resolution ---------------------------------------------------------

    @overload
    def get(self, identifier: Type[T], context: Any = None) -> T: ...
    @overload
    def get(self, identifier: Union[str, Token], context: Any = None) -> Any: ...
    def get(self, identifier, context=None):
        return self._resolve(identifier, context)

    resolve = get

    def get_named(self, identifier: KeyT, name: str, context: Any = None) -> Any:
        return self._resolve(identifier, context, name=name)

    def get_tagged(self, identifier: KeyT, key: str, value: Any, context: Any = None) -> Any:
        return self._resolve(identifier, context, tag=(key, value))

    def get_all(self, identifier: KeyT) -> List[Any]:
        bindings = self._bindings.all(identifier)
        if not bindings and self._deferred_source is not None and self._deferred_source.load_deferred(identifier):
            bindings = self._bindings.all(identifier)
        if not bindings:
            if self._parent is not None and self._parent.can_resolve(identifier):
                return self._parent.get_all(identifier)
            raise BindingNotFoundError(identifier, self._current_consumer())
        requester = self._current_consumer()
        return [self._materialize(b, requester) for b in bindings]

    def lazy_load(self, identifier: KeyT, factory: Callable[..., Any]) -> Any:
        if self.can_resolve(identifier):
            return self.get(identifier)
        instance = self._invoke(factory)
        self.constant(identifier, instance)
        return instance

    def build(self, cls: Type[T]) -> T:
        """Construct *cls* with its constructor dependencies resolved through this container."""
        token = _resolution_stack.set(_resolution_stack.get() + (_Frame(None, cls),))
        try:
            deps = self._reflector.constructor_dependencies(cls)
            return cls(**self._resolve_args(deps))
        finally:
            _resolution_stack.reset(token)

    def _current_consumer(self) -> Any:
        stack = _resolution_stack.get()
        return stack[-1].consumer if stack else None

    def _resolve(self, identifier: KeyT, context: Any, name: Optional[str] = None,
                 tag: Optional[Tuple[str, Any]] = None) -> Any:
        consumer = context if context is not None else self._current_consumer()

        if name is None and tag is None and consumer is not None:
            override = self._contextual.resolve_contextual(consumer, identifier, invoke=self._invoke)
            if override is not NO_OVERRIDE:
                return override

        binding = self._bindings.find(identifier, name, tag)
        if binding is None and not self._bindings.has(identifier) and self._deferred_source is not None:
            if self._deferred_source.load_deferred(identifier):
                binding = self._bindings.find(identifier, name, tag)

        if binding is None:
            if self._parent is not None and self._parent.can_resolve(identifier):
                return self._parent._resolve(identifier, context, name, tag)
            raise BindingNotFoundError(identifier, consumer)

        return self._materialize(binding, consumer)

    def _materialize(self, binding: Binding, requester: Any) -> Any:
        if binding.strategy == STRATEGY_CONSTANT:
            cache = self._caches.singleton()
        else:
            cache = self._caches.for_scope(self._scopes, binding.scope)
        cached = cache.get(binding)
        if cached is not MISSING:
            self._cache_hits += 1
            return cached

        stack = _resolution_stack.get()
        for idx, frame in enumerate(stack):
            if frame.binding is binding:
                chain = [f.binding.identifier for f in stack[idx:] if f.binding is not None]
                raise CyclicDependencyError(chain + [binding.identifier])

        consumer = binding.implementation if binding.strategy == STRATEGY_CLASS else binding.identifier
        token = _resolution_stack.set(stack + (_Frame(binding, consumer),))
        try:
            instance = self._create(binding)
            if inspect.isawaitable(instance):
                close = getattr(instance, "close", None)
                if callable(close):
                    close()
                raise AsyncResolutionError(binding.identifier)
            cache.put(binding, instance)
            self._resolve_count += 1
            if not isinstance(instance, _PRIMITIVES):
                try:
                    self._injector.resolve(instance, self)
                except Exception:
                    cache.pop(binding)
                    raise
        finally:
            _resolution_stack.reset(token)

        LOGGER.debug("Resolved %s (requested by %s)", identifier_name(binding.identifier),
                     identifier_name(requester) if requester is not None else "root")
        return instance

    def _create(self, binding: Binding) -> Any:
        if binding.strategy == STRATEGY_CONSTANT:
            return binding.implementation
        if binding.strategy == STRATEGY_FACTORY:
            return self._invoke(binding.implementation)
        return self.build(binding.implementation)

    def _invoke(self, fn: Callable[..., Any]) -> Any:
        if inspect.isclass(fn):
            return self.build(fn)
        return fn(**self._resolve_args(analyze_callable_dependencies(fn)))

    def _resolve_args(self, dependencies: Tuple[DependencyRequest, ...]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        for dep in dependencies:
            try:
                kwargs[dep.parameter_name] = self._resolve_dependency(dep)
            except BindingNotFoundError as e:
                if e.identifier != dep.key:
                    raise
                if dep.key != dep.parameter_name and self.can_resolve(dep.parameter_name):
                    kwargs[dep.parameter_name] = self.get(dep.parameter_name)
                elif dep.has_default:
                    continue
                elif dep.is_optional:
                    kwargs[dep.parameter_name] = None
                else:
                    raise
        return kwargs

    def _resolve_dependency(self, dep: DependencyRequest) -> Any:
        if dep.named is not None:
            return self.get_named(dep.key, dep.named)
        if dep.tagged is not None:
            return self.get_tagged(dep.key, dep.tagged[0], dep.tagged[1])
        return self.get(dep.key)

    # -- scopes & children --------------------------------------------------

    @contextmanager
    def request_scope(self, request_id: Any = None) -> Iterator[Any]:
        """Open a request boundary; request-scoped instances live until it closes."""
        sid = request_id if request_id is not None else uuid.uuid4().hex
        if self._scopes.get_id(SCOPE_REQUEST) == sid:
            yield sid
            return
        token = self._scopes.activate(SCOPE_REQUEST, sid)
        try:
            yield sid
        finally:
            self._scopes.deactivate(SCOPE_REQUEST, token)
            root = self
            while root._parent is not None:
                root = root._parent
            root._release_request(sid)

    def _release_request(self, sid: Any) -> None:
        self._caches.cleanup_scope(SCOPE_REQUEST, sid)
        for child in list(self._children):
            child._release_request(sid)

    def create_child(self) -> "Container":
        return Container(self._store, parent=self)

    def stats(self) -> Dict[str, Any]:
        resolves = self._resolve_count
        hits = self._cache_hits
        total = resolves + hits
        return {
            "uptime_seconds": time.time() - self._created_at,
            "total_resolves": resolves,
            "cache_hits": hits,
            "cache_hit_rate": (hits / total) if total > 0 else 0.0,
            "bindings": len(self._bindings),
            "cached_instances": sum(1 for _ in self._caches.all_items()),
        }
