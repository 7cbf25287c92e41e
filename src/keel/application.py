# keel/application.py
import asyncio
import inspect
import logging
import signal
import time
from typing import Any, Dict, Mapping, Optional, Sequence, Set, Union

from .config import ApplicationConfig
from .constants import APPLICATION, LOGGER
from .container import Container
from .identifiers import KeyT
from .metadata import MetadataStore
from .providers import ProviderConfig
from .registry import LifecycleState, ServiceProviderRegistry


class Application:
    """Composition root: one container, one provider registry, one config.

    Usable as an async context manager that boots on enter and terminates on
    exit::

        async with Application(config=configuration(EnvSource())) as app:
            app.register(DatabaseProvider)
            ...

    Args:
        container: Container to use. A fresh one is created if omitted.
        config: Application settings. Defaults to :class:`ApplicationConfig`.
        metadata: Metadata store for a freshly created container.
    """

    def __init__(self, container: Optional[Container] = None, config: Optional[ApplicationConfig] = None,
                 *, metadata: Optional[MetadataStore] = None) -> None:
        self.config = config if config is not None else ApplicationConfig()
        self.container = container if container is not None else Container(metadata)
        self._level = logging.INFO if self.config.debug else logging.DEBUG
        self.registry = ServiceProviderRegistry(
            self.container, environment=self.config.environment, log_level=self._level
        )
        self._stats: Dict[str, Any] = {
            "start_time": time.time(),
            "boot_time": 0.0,
            "request_count": 0,
            "error_count": 0,
        }
        self._signal_tasks: Set[asyncio.Task] = set()
        self.container.constant(Application, self)
        self.container.constant("Application", self)
        self.container.constant(APPLICATION, self)
        self.container.constant(ApplicationConfig, self.config)

    @property
    def state(self) -> LifecycleState:
        return self.registry.state

    def register(self, provider: Any,
                 config: Union[ProviderConfig, Mapping[str, Any], None] = None) -> "Application":
        """Register a provider instance, or a provider class to instantiate with this application.

        Overrides under ``config.providers[<class name>]`` apply first, then *config*.
        """
        if inspect.isclass(provider):
            provider = provider(self)
        if not isinstance(config, ProviderConfig):
            merged = dict(self.config.provider_config(type(provider).__name__))
            merged.update(config or {})
            config = merged or None
        try:
            self.registry.register(provider, config)
        except Exception:
            self._stats["error_count"] += 1
            raise
        return self

    def register_many(self, providers: Sequence[Any]) -> "Application":
        for item in providers:
            if isinstance(item, tuple):
                self.register(*item)
            else:
                self.register(item)
        return self

    async def boot(self) -> None:
        start = time.perf_counter()
        try:
            await self.registry.boot()
        except Exception:
            self._stats["error_count"] += 1
            raise
        self._stats["boot_time"] = time.perf_counter() - start
        LOGGER.log(self._level, "Application %s %s booted in %.3fs (%s)",
                   self.config.name, self.config.version, self._stats["boot_time"], self.config.environment)

    async def terminate(self) -> None:
        await self.registry.terminate()
        self._stats["error_count"] += len(self.registry.termination_errors)
        LOGGER.log(self._level, "Application %s terminated", self.config.name)

    def get(self, identifier: KeyT, context: Any = None) -> Any:
        self._stats["request_count"] += 1
        try:
            return self.registry.resolve(identifier, context)
        except Exception:
            self._stats["error_count"] += 1
            raise

    resolve = get

    async def aget(self, identifier: KeyT, context: Any = None) -> Any:
        self._stats["request_count"] += 1
        try:
            return await self.registry.aresolve(identifier, context)
        except Exception:
            self._stats["error_count"] += 1
            raise

    def is_bound(self, identifier: KeyT) -> bool:
        return self.container.is_bound(identifier)

    def can_resolve(self, identifier: KeyT) -> bool:
        return self.registry.can_resolve(identifier)

    def create_child(self) -> Container:
        return self.container.create_child()

    def is_booted(self) -> bool:
        return self.registry.is_booted()

    def is_terminating(self) -> bool:
        return self.registry.is_terminating()

    def stats(self) -> Dict[str, Any]:
        out = dict(self._stats)
        out["uptime"] = time.time() - self._stats["start_time"]
        out["state"] = self.state.value
        out["providers"] = self.registry.stats()
        out["container"] = self.container.stats()
        return out

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None,
                                signals: Sequence[int] = (signal.SIGTERM, signal.SIGINT)) -> None:
        """Terminate the application when one of *signals* arrives.

        Needs a loop that supports ``add_signal_handler`` (not available on Windows).
        """
        loop = loop if loop is not None else asyncio.get_running_loop()

        def on_signal(signum: int) -> None:
            LOGGER.log(self._level, "Received signal %s, terminating %s", signum, self.config.name)
            task = loop.create_task(self.terminate())
            self._signal_tasks.add(task)
            task.add_done_callback(self._signal_tasks.discard)

        for sig in signals:
            loop.add_signal_handler(sig, on_signal, sig)

    async def __aenter__(self) -> "Application":
        await self.boot()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.terminate()
