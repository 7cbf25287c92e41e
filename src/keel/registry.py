# keel/registry.py
import asyncio
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, NoReturn, Optional, Sequence, Tuple, Union

from .constants import LOGGER, REGISTRY
from .exceptions import (
    AsyncResolutionError,
    BindingNotFoundError,
    InvalidProviderError,
    InvalidStateError,
    ProviderBootError,
    ProviderRegistrationError,
    ProviderTerminationError,
)
from .identifiers import KeyT, identifier_name
from .metadata import MetadataStore
from .providers import ProviderConfig, service_provider_options


class LifecycleState(str, Enum):
    CREATED = "created"
    REGISTERED = "registered"
    BOOTING = "booting"
    BOOTED = "booted"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    ERROR = "error"


@dataclass(eq=False)
class ProviderRecord:
    provider: Any
    config: ProviderConfig
    deferred: bool
    terminable: bool
    order: int
    registered: bool = False
    booted: bool = False
    loaded: bool = False
    pending_registration: Optional[Awaitable[Any]] = None

    @property
    def name(self) -> str:
        return type(self.provider).__name__


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def _await(aw: Awaitable[Any]) -> Any:
    return await aw


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def _is_deferred(provider: Any) -> bool:
    if getattr(provider, "is_deferred", False) is True:
        return True
    return getattr(provider, "provides", None) is not None


def _is_terminable(provider: Any) -> bool:
    return getattr(provider, "is_terminable", False) is True or callable(getattr(provider, "terminate", None))


class ServiceProviderRegistry:
    """Owns the providers of one container and sequences their lifecycle.

    ``register`` files providers (deferred ones are kept aside), ``boot``
    boots the active ones in descending priority one at a time, and
    ``terminate`` runs every terminable provider concurrently. Deferred
    providers are promoted the first time one of their identifiers is
    requested from the container.

    Args:
        container: Container the providers bind into. The registry attaches
            itself as the container's deferred source.
        environment: Active environment name used to filter providers whose
            config names other environments.
        store: Metadata store holding ``@service_provider`` options.
            Defaults to the container's store.
        log_level: Level for lifecycle messages.
    """

    def __init__(self, container: Any, *, environment: Optional[str] = None,
                 store: Optional[MetadataStore] = None, log_level: int = logging.DEBUG) -> None:
        self._container = container
        self._environment = environment
        self._store = store if store is not None else getattr(container, "metadata", None)
        self._log_level = log_level
        self._state = LifecycleState.CREATED
        self._active: List[ProviderRecord] = []
        self._deferred: List[ProviderRecord] = []
        self._order = itertools.count()
        self._terminating = False
        self.termination_errors: List[ProviderTerminationError] = []
        self._stats: Dict[str, Any] = {}
        self._reset_stats()
        container.attach_deferred_source(self)
        container.constant("ServiceProviderRegistry", self)
        container.constant(REGISTRY, self)

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def container(self) -> Any:
        return self._container

    def _reset_stats(self) -> None:
        self._stats = {
            "total_providers": 0,
            "deferred_providers": 0,
            "terminable_providers": 0,
            "booted_providers": 0,
            "promotions": 0,
            "registration_time": 0.0,
            "boot_time": 0.0,
        }

    def _log(self, msg: str, *args: Any) -> None:
        LOGGER.log(self._log_level, msg, *args)

    # -- registration -------------------------------------------------------

    @staticmethod
    def validate_provider(provider: Any) -> List[str]:
        """Return every capability problem of *provider*; empty when valid."""
        problems: List[str] = []
        for hook in ("register", "boot"):
            if not callable(getattr(provider, hook, None)):
                problems.append(f"missing callable '{hook}'")
        if _is_deferred(provider):
            provides = getattr(provider, "provides", None)
            if provides is None or isinstance(provides, (str, bytes)) or not isinstance(provides, Sequence):
                problems.append("deferred provider must declare 'provides' as a sequence of identifiers")
            if not callable(getattr(provider, "is_loaded", None)):
                problems.append("deferred provider is missing callable 'is_loaded'")
        if getattr(provider, "is_terminable", False) is True and not callable(getattr(provider, "terminate", None)):
            problems.append("terminable provider is missing callable 'terminate'")
        return problems

    def _effective_config(self, provider: Any,
                          config: Union[ProviderConfig, Mapping[str, Any], None]) -> ProviderConfig:
        if isinstance(config, ProviderConfig):
            return config
        base = service_provider_options(provider, store=self._store)
        if not config:
            return base
        overrides = dict(config)
        if "dependencies" in overrides:
            overrides["dependencies"] = tuple(overrides["dependencies"])
        env = overrides.get("environment")
        if env is not None and not isinstance(env, str):
            overrides["environment"] = tuple(env)
        return replace(base, **overrides)

    def register(self, provider: Any,
                 config: Union[ProviderConfig, Mapping[str, Any], None] = None) -> "ServiceProviderRegistry":
        """File *provider* and, unless deferred, run its ``register`` hook.

        Raises:
            InvalidStateError: If the registry has already started booting.
            InvalidProviderError: If the provider lacks a required capability.
            ProviderBootError: If the provider's ``register`` hook raises.
        """
        allowed = (LifecycleState.CREATED, LifecycleState.REGISTERED)
        if self._state not in allowed:
            raise InvalidStateError(self._state, allowed)
        start = time.perf_counter()
        name = type(provider).__name__

        problems = self.validate_provider(provider)
        if problems:
            self._state = LifecycleState.ERROR
            raise InvalidProviderError(name, problems)

        cfg = self._effective_config(provider, config)
        if not cfg.matches_environment(self._environment):
            LOGGER.debug("Skipping provider %s: not enabled for environment %r", name, self._environment)
            return self

        record = ProviderRecord(
            provider=provider,
            config=cfg,
            deferred=_is_deferred(provider),
            terminable=_is_terminable(provider),
            order=next(self._order),
        )

        if record.deferred:
            self._deferred.append(record)
            self._stats["deferred_providers"] += 1
            self._log("Registered deferred provider: %s", name)
        else:
            self._active.append(record)
            self._stats["total_providers"] += 1
            if record.terminable:
                self._stats["terminable_providers"] += 1
            if not cfg.deferred:
                try:
                    result = provider.register()
                except Exception as e:
                    self._state = LifecycleState.ERROR
                    raise ProviderBootError(name, e) from e
                if inspect.isawaitable(result):
                    record.pending_registration = result
                else:
                    record.registered = True
            self._log("Registered provider: %s", name)

        self._state = LifecycleState.REGISTERED
        self._stats["registration_time"] += time.perf_counter() - start
        return self

    def register_many(self, providers: Sequence[Any]) -> "ServiceProviderRegistry":
        """Validate every provider first, then register them all.

        Entries are providers or ``(provider, config)`` pairs.

        Raises:
            ProviderRegistrationError: With one error per invalid provider.
                Nothing is registered in that case.
        """
        entries: List[Tuple[Any, Any]] = [
            item if isinstance(item, tuple) else (item, None) for item in providers
        ]
        errors = []
        for provider, _ in entries:
            problems = self.validate_provider(provider)
            if problems:
                errors.append(InvalidProviderError(type(provider).__name__, problems))
        if errors:
            self._state = LifecycleState.ERROR
            raise ProviderRegistrationError(errors)
        for provider, config in entries:
            self.register(provider, config)
        return self

    # -- boot ---------------------------------------------------------------

    @staticmethod
    def _sorted(records: List[ProviderRecord]) -> List[ProviderRecord]:
        return sorted(records, key=lambda r: (-r.config.priority, r.order))

    async def _register_record(self, record: ProviderRecord) -> None:
        if record.registered:
            return
        if record.pending_registration is not None:
            pending, record.pending_registration = record.pending_registration, None
            await pending
        else:
            await _maybe_await(record.provider.register())
        record.registered = True

    async def _boot_record(self, record: ProviderRecord) -> None:
        await self._register_record(record)
        for dep in record.config.dependencies:
            if not self._container.can_resolve(dep):
                raise BindingNotFoundError(dep, record.name)
        await _maybe_await(record.provider.boot())
        record.booted = True
        self._stats["booted_providers"] += 1
        self._log("Booted provider: %s", record.name)

    async def boot(self) -> None:
        """Boot every active provider in descending priority, one at a time.

        Providers promoted while booting are booted in the same call. Calling
        ``boot`` again after success is a no-op.

        Raises:
            InvalidStateError: If the registry is terminating, terminated or failed.
            ProviderBootError: Wrapping the first failure; remaining providers
                are not booted and the state becomes ``ERROR``.
        """
        if self._state is LifecycleState.BOOTED:
            return
        allowed = (LifecycleState.CREATED, LifecycleState.REGISTERED)
        if self._state not in allowed:
            raise InvalidStateError(self._state, allowed)

        self._state = LifecycleState.BOOTING
        start = time.perf_counter()
        count = 0
        while True:
            pending = [r for r in self._active if not r.booted]
            if not pending:
                break
            for record in self._sorted(pending):
                try:
                    await self._boot_record(record)
                except Exception as e:
                    self._state = LifecycleState.ERROR
                    LOGGER.error("Provider %s failed to boot: %s", record.name, e)
                    raise ProviderBootError(record.name, e) from e
                count += 1

        self._state = LifecycleState.BOOTED
        self._stats["boot_time"] = time.perf_counter() - start
        self._log("Booted %d provider(s) in %.3fs", count, self._stats["boot_time"])

    # -- terminate ----------------------------------------------------------

    async def _terminate_record(self, record: ProviderRecord) -> None:
        try:
            await _maybe_await(record.provider.terminate())
        except Exception as e:
            err = ProviderTerminationError(record.name, e)
            self.termination_errors.append(err)
            LOGGER.error("%s", err)
            return
        self._log("Terminated provider: %s", record.name)

    async def terminate(self) -> None:
        """Run every terminable provider's ``terminate`` concurrently.

        Failures are wrapped in :class:`ProviderTerminationError`, logged and
        collected in :attr:`termination_errors`; they never stop the others.
        Ends in ``TERMINATED``, or stays ``ERROR`` if it started there.
        """
        if self._terminating:
            return
        self._terminating = True
        started_in_error = self._state is LifecycleState.ERROR
        if not started_in_error:
            self._state = LifecycleState.TERMINATING

        records = [r for r in self._active if r.terminable]
        await asyncio.gather(*(self._terminate_record(r) for r in records))

        self._state = LifecycleState.ERROR if started_in_error else LifecycleState.TERMINATED
        self._log("Terminated %d provider(s), %d error(s)", len(records), len(self.termination_errors))

    # -- deferred promotion -------------------------------------------------

    def _find_deferred(self, identifier: KeyT) -> Optional[ProviderRecord]:
        for record in self._deferred:
            if record.loaded:
                continue
            check = getattr(record.provider, "provides_service", None)
            if callable(check):
                if check(identifier):
                    return record
            elif identifier in record.provider.provides:
                return record
        return None

    def provides(self, identifier: KeyT) -> bool:
        return self._find_deferred(identifier) is not None

    def _begin_promotion(self, record: ProviderRecord) -> None:
        closed = (LifecycleState.TERMINATING, LifecycleState.TERMINATED, LifecycleState.ERROR)
        if self._state in closed:
            raise InvalidStateError(self._state, [s for s in LifecycleState if s not in closed])
        record.loaded = True
        self._deferred.remove(record)
        self._active.append(record)
        if record.terminable:
            self._stats["terminable_providers"] += 1
        self._stats["total_providers"] += 1

    def _finish_promotion(self, record: ProviderRecord) -> None:
        mark = getattr(record.provider, "mark_loaded", None)
        if callable(mark):
            mark()
        self._stats["promotions"] += 1
        self._log("Loaded deferred provider: %s", record.name)

    def _fail_promotion(self, record: ProviderRecord, error: Exception) -> NoReturn:
        self._state = LifecycleState.ERROR
        LOGGER.error("Deferred provider %s failed to load: %s", record.name, error)
        raise ProviderBootError(record.name, error) from error

    def _call_sync(self, hook: Callable[[], Any], identifier: KeyT) -> Any:
        result = hook()
        if inspect.isawaitable(result):
            if not _loop_running():
                return asyncio.run(_await(result))
            close = getattr(result, "close", None)
            if callable(close):
                close()
            raise AsyncResolutionError(identifier)
        return result

    def load_deferred(self, identifier: KeyT) -> bool:
        """Promote the deferred provider declaring *identifier*, synchronously.

        Coroutine hooks run on a fresh event loop when none is running.

        Returns:
            ``True`` if a provider was promoted.

        Raises:
            AsyncResolutionError: If a hook is a coroutine and a loop is
                already running. Use :meth:`aresolve` there.
            ProviderBootError: If the provider's hooks fail.
        """
        record = self._find_deferred(identifier)
        if record is None:
            return False
        provider = record.provider
        booting_now = self._state is LifecycleState.BOOTED
        hooks = [provider.register] + ([provider.boot] if booting_now else [])
        if _loop_running() and any(inspect.iscoroutinefunction(h) for h in hooks):
            raise AsyncResolutionError(identifier)

        self._begin_promotion(record)
        try:
            self._call_sync(provider.register, identifier)
            record.registered = True
            if booting_now:
                self._call_sync(provider.boot, identifier)
                record.booted = True
                self._stats["booted_providers"] += 1
        except Exception as e:
            self._fail_promotion(record, e)
        self._finish_promotion(record)
        return True

    async def aload_deferred(self, identifier: KeyT) -> bool:
        record = self._find_deferred(identifier)
        if record is None:
            return False
        self._begin_promotion(record)
        try:
            await self._register_record(record)
            if self._state is LifecycleState.BOOTED:
                await self._boot_record(record)
        except Exception as e:
            self._fail_promotion(record, e)
        self._finish_promotion(record)
        return True

    # -- resolution ---------------------------------------------------------

    def resolve(self, identifier: KeyT, context: Any = None) -> Any:
        return self._container.get(identifier, context)

    async def aresolve(self, identifier: KeyT, context: Any = None) -> Any:
        """Like :meth:`resolve`, but awaits asynchronous provider hooks during promotion."""
        if not self._container.is_bound(identifier):
            await self.aload_deferred(identifier)
        return self._container.get(identifier, context)

    def can_resolve(self, identifier: KeyT) -> bool:
        return self._container.can_resolve(identifier)

    # -- introspection ------------------------------------------------------

    def providers(self) -> List[Any]:
        return [r.provider for r in self._active]

    def deferred_providers(self) -> List[Any]:
        return [r.provider for r in self._deferred]

    def terminable_providers(self) -> List[Any]:
        return [r.provider for r in self._active if r.terminable]

    def records(self) -> List[ProviderRecord]:
        return list(self._active) + list(self._deferred)

    def is_booted(self) -> bool:
        return self._state is LifecycleState.BOOTED

    def is_terminating(self) -> bool:
        return self._state is LifecycleState.TERMINATING

    def clear(self) -> None:
        """Discard every provider record and return to ``CREATED``."""
        self._active.clear()
        self._deferred.clear()
        self.termination_errors.clear()
        self._terminating = False
        self._state = LifecycleState.CREATED
        self._reset_stats()

    def stats(self) -> Dict[str, Any]:
        out = dict(self._stats)
        out["state"] = self._state.value
        out["pending_deferred"] = [identifier_name(type(r.provider)) for r in self._deferred]
        return out
