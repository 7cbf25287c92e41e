# keel/providers.py
"""Service provider base classes and the ``@service_provider`` decorator.

Providers are structural: the registry accepts any object with callable
``register`` and ``boot``. The classes here supply the common helpers and the
deferred/terminable flags.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .constants import SCOPE_SINGLETON, SCOPE_TRANSIENT, SERVICE_PROVIDER, SERVICE_PROVIDER_OPTIONS
from .identifiers import KeyT
from .metadata import MetadataStore, default_store

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    """Per-provider registration options.

    Attributes:
        deferred: Postpone ``register()`` of a regular provider to the start of ``boot()``.
        priority: Higher values boot first. Ties keep registration order.
        environment: Environment name(s) the provider is active in. ``None`` means all.
        dependencies: Identifiers that must be resolvable before the provider boots.
        metadata: Free-form data for the application.
    """

    deferred: bool = False
    priority: int = 0
    environment: Optional[Union[str, Tuple[str, ...]]] = None
    dependencies: Tuple[KeyT, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def matches_environment(self, environment: Optional[str]) -> bool:
        if self.environment is None or environment is None:
            return True
        if isinstance(self.environment, str):
            return self.environment == environment
        return environment in self.environment


class ServiceProvider(ABC):
    """Base class for providers.

    Args:
        app: The owning application, or a bare container.
    """

    is_deferred = False
    is_terminable = False

    def __init__(self, app: Any) -> None:
        self.app = app

    @property
    def container(self) -> Any:
        return getattr(self.app, "container", self.app)

    @abstractmethod
    def register(self) -> Optional[Awaitable[None]]:
        ...

    def boot(self) -> Optional[Awaitable[None]]:
        return None

    def resolve(self, identifier: KeyT) -> Any:
        return self.container.get(identifier)

    def bind(self, identifier: KeyT, implementation: Any, scope: str = SCOPE_TRANSIENT, **kwargs: Any) -> Any:
        return self.container.bind(identifier, implementation, scope, **kwargs)

    def singleton(self, identifier: KeyT, implementation: Any, **kwargs: Any) -> Any:
        return self.container.bind(identifier, implementation, SCOPE_SINGLETON, **kwargs)

    def is_bound(self, identifier: KeyT) -> bool:
        return self.container.is_bound(identifier)


class DeferredServiceProvider(ServiceProvider):
    """Provider activated on first request of one of the identifiers in ``provides``."""

    is_deferred = True
    provides: Sequence[KeyT] = ()

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        self._loaded = False

    def provides_service(self, identifier: KeyT) -> bool:
        return identifier in self.provides

    def is_loaded(self) -> bool:
        return self._loaded

    def mark_loaded(self) -> None:
        self._loaded = True

    async def load(self) -> None:
        """Register and boot this provider outside a registry. No-op once loaded."""
        if self._loaded:
            return
        result = self.register()
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            await result
        result = self.boot()
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            await result
        self._loaded = True


class TerminableServiceProvider(ServiceProvider):
    """Provider with shutdown cleanup.

    Subclasses either override :meth:`terminate` or queue handlers with
    :meth:`on_terminate`; the default ``terminate`` runs the queued handlers.
    """

    is_terminable = True

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        self._cleanup_handlers: List[Callable[[], Any]] = []

    def on_terminate(self, handler: Callable[[], Any]) -> None:
        self._cleanup_handlers.append(handler)

    async def terminate(self) -> None:
        await self.execute_cleanup_handlers()

    async def execute_cleanup_handlers(self) -> None:
        async def run(handler: Callable[[], Any]) -> None:
            try:
                result = handler()
                if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                    await result
            except Exception:
                _logger.exception("Cleanup handler %r of %s failed", handler, type(self).__name__)

        await asyncio.gather(*(run(h) for h in self._cleanup_handlers))


def service_provider(cls=None, *, deferred: bool = False, priority: int = 0,
                     environment: Optional[Union[str, Sequence[str]]] = None,
                     dependencies: Sequence[KeyT] = (), metadata: Optional[Dict[str, Any]] = None,
                     store: Optional[MetadataStore] = None):
    """Mark a class as a service provider and record its default :class:`ProviderConfig`."""

    def dec(c):
        s = store if store is not None else default_store()
        env = environment if environment is None or isinstance(environment, str) else tuple(environment)
        options = ProviderConfig(
            deferred=deferred,
            priority=priority,
            environment=env,
            dependencies=tuple(dependencies),
            metadata=dict(metadata or {}),
        )
        s.set(SERVICE_PROVIDER, True, c)
        s.set(SERVICE_PROVIDER_OPTIONS, options, c)
        return c

    return dec(cls) if cls else dec


def is_service_provider(target: Any, *, store: Optional[MetadataStore] = None) -> bool:
    s = store if store is not None else default_store()
    cls = target if isinstance(target, type) else type(target)
    return s.get(SERVICE_PROVIDER, cls) is True


def service_provider_options(target: Any, *, store: Optional[MetadataStore] = None) -> ProviderConfig:
    s = store if store is not None else default_store()
    cls = target if isinstance(target, type) else type(target)
    return s.get(SERVICE_PROVIDER_OPTIONS, cls) or ProviderConfig()
