# tests/test_registry.py
import asyncio
import logging

import pytest

from keel.constants import REGISTRY
from keel.exceptions import (
    AsyncResolutionError,
    InvalidProviderError,
    InvalidStateError,
    ProviderBootError,
    ProviderRegistrationError,
)
from keel.providers import (
    DeferredServiceProvider,
    ProviderConfig,
    ServiceProvider,
    TerminableServiceProvider,
    service_provider,
)
from keel.registry import LifecycleState, ServiceProviderRegistry


class Mailer:
    pass


class RecordingProvider(ServiceProvider):
    def __init__(self, app, log, name="provider", fail_boot=False):
        super().__init__(app)
        self.log = log
        self.label = name
        self.fail_boot = fail_boot

    def register(self):
        self.log.append(f"register:{self.label}")

    def boot(self):
        self.log.append(f"boot:{self.label}")
        if self.fail_boot:
            raise RuntimeError(f"{self.label} exploded")


class MailProvider(DeferredServiceProvider):
    provides = ("Mailer",)

    def __init__(self, app):
        super().__init__(app)
        self.registered = 0
        self.booted = 0

    def register(self):
        self.registered += 1
        self.singleton("Mailer", Mailer)

    def boot(self):
        self.booted += 1


@pytest.fixture
def registry(container):
    return ServiceProviderRegistry(container)


class TestRegistration:
    def test_registry_binds_itself(self, container, registry):
        assert container.get("ServiceProviderRegistry") is registry
        assert container.get(REGISTRY) is registry

    def test_regular_provider_is_registered_immediately(self, container, registry):
        log = []
        registry.register(RecordingProvider(container, log))
        assert log == ["register:provider"]
        assert registry.state is LifecycleState.REGISTERED

    def test_config_deferred_postpones_register_to_boot(self, container, registry):
        log = []
        registry.register(RecordingProvider(container, log), {"deferred": True})
        assert log == []

        asyncio.run(registry.boot())
        assert log == ["register:provider", "boot:provider"]

    def test_invalid_provider_lists_every_problem(self, registry):
        class Broken:
            is_deferred = True
            is_terminable = True
            provides = "Mailer"

        with pytest.raises(InvalidProviderError) as excinfo:
            registry.register(Broken())
        assert len(excinfo.value.problems) == 5
        assert registry.state is LifecycleState.ERROR

    def test_duck_typed_deferred_provider_needs_a_sequence(self, registry):
        class StringProvides:
            provides = "Mailer"

            def register(self):
                pass

            def boot(self):
                pass

            def is_loaded(self):
                return False

        with pytest.raises(InvalidProviderError, match="sequence"):
            registry.register(StringProvides())
        assert registry.provides("ail") is False

    def test_provides_without_is_loaded_is_rejected(self, registry):
        class HalfDeferred:
            provides = ["Mailer"]

            def register(self):
                pass

            def boot(self):
                pass

        with pytest.raises(InvalidProviderError, match="is_loaded"):
            registry.register(HalfDeferred())

    def test_register_many_aggregates_failures(self, container, registry):
        class NoBoot:
            def register(self):
                pass

        class NoRegister:
            def boot(self):
                pass

        log = []
        with pytest.raises(ProviderRegistrationError) as excinfo:
            registry.register_many([RecordingProvider(container, log), NoBoot(), NoRegister()])

        assert [e.provider_name for e in excinfo.value.errors] == ["NoBoot", "NoRegister"]
        assert log == []

    def test_duck_typed_providers_are_accepted(self, container, registry):
        class Plain:
            def register(self):
                container.constant("plain", True)

            def boot(self):
                pass

        registry.register(Plain())
        assert container.get("plain") is True

    def test_environment_filter(self, container):
        registry = ServiceProviderRegistry(container, environment="production")
        log = []
        registry.register(RecordingProvider(container, log, "dev"), {"environment": "development"})
        registry.register(RecordingProvider(container, log, "prod"), {"environment": ["production", "staging"]})

        assert log == ["register:prod"]
        assert len(registry.providers()) == 1

    def test_decorator_options_are_used(self, store, container, registry):
        @service_provider(priority=7, store=store)
        class Decorated(RecordingProvider):
            pass

        registry.register(Decorated(container, []))
        assert registry.records()[0].config.priority == 7

    def test_register_after_boot_is_rejected(self, container, registry):
        asyncio.run(registry.boot())
        with pytest.raises(InvalidStateError):
            registry.register(RecordingProvider(container, []))


class TestBoot:
    @pytest.mark.asyncio
    async def test_boots_in_descending_priority_with_stable_ties(self, container, registry):
        log = []
        registry.register(RecordingProvider(container, log, "low"), ProviderConfig(priority=1))
        registry.register(RecordingProvider(container, log, "high-1"), ProviderConfig(priority=10))
        registry.register(RecordingProvider(container, log, "high-2"), ProviderConfig(priority=10))
        log.clear()

        await registry.boot()
        assert log == ["boot:high-1", "boot:high-2", "boot:low"]
        assert registry.is_booted() is True

    @pytest.mark.asyncio
    async def test_failure_halts_remaining_boots(self, container, registry):
        log = []
        registry.register(RecordingProvider(container, log, "p10", fail_boot=True), {"priority": 10})
        registry.register(RecordingProvider(container, log, "p5"), {"priority": 5})
        log.clear()

        with pytest.raises(ProviderBootError) as excinfo:
            await registry.boot()

        assert excinfo.value.provider_name == "RecordingProvider"
        assert isinstance(excinfo.value.cause, RuntimeError)
        assert "boot:p5" not in log
        assert registry.state is LifecycleState.ERROR

    @pytest.mark.asyncio
    async def test_boot_is_idempotent(self, container, registry):
        log = []
        registry.register(RecordingProvider(container, log))
        await registry.boot()
        await registry.boot()
        assert log.count("boot:provider") == 1

    @pytest.mark.asyncio
    async def test_async_hooks_are_awaited(self, container, registry):
        class AsyncProvider(ServiceProvider):
            async def register(self):
                await asyncio.sleep(0)
                self.container.constant("ready", "yes")

            async def boot(self):
                await asyncio.sleep(0)

        registry.register(AsyncProvider(container))
        assert container.is_bound("ready") is False
        await registry.boot()
        assert container.get("ready") == "yes"

    @pytest.mark.asyncio
    async def test_missing_dependency_fails_boot(self, container, registry):
        registry.register(RecordingProvider(container, []), {"dependencies": ["Database"]})
        with pytest.raises(ProviderBootError, match="Database"):
            await registry.boot()

    @pytest.mark.asyncio
    async def test_dependency_on_deferred_identifier_is_satisfied(self, container, registry):
        registry.register(RecordingProvider(container, []), {"dependencies": ["Mailer"]})
        registry.register(MailProvider(container))
        await registry.boot()
        assert registry.is_booted()


class TestTerminate:
    @pytest.mark.asyncio
    async def test_failures_do_not_stop_other_terminations(self, container, registry, caplog):
        done = []

        class Good(TerminableServiceProvider):
            def register(self):
                pass

            async def terminate(self):
                await asyncio.sleep(0)
                done.append("good")

        class Bad(TerminableServiceProvider):
            def register(self):
                pass

            def terminate(self):
                raise RuntimeError("disk on fire")

        registry.register(Bad(container))
        registry.register(Good(container))
        await registry.boot()

        with caplog.at_level(logging.ERROR, logger="keel"):
            await registry.terminate()

        assert done == ["good"]
        assert registry.state is LifecycleState.TERMINATED
        assert [e.provider_name for e in registry.termination_errors] == ["Bad"]
        assert "disk on fire" in caplog.text

    @pytest.mark.asyncio
    async def test_cleanup_handlers_run(self, container, registry):
        cleaned = []

        class Pool(TerminableServiceProvider):
            def register(self):
                self.on_terminate(lambda: cleaned.append("sync"))

                async def close():
                    cleaned.append("async")

                self.on_terminate(close)

        registry.register(Pool(container))
        await registry.boot()
        await registry.terminate()
        assert sorted(cleaned) == ["async", "sync"]

    @pytest.mark.asyncio
    async def test_terminate_after_error_keeps_error_state(self, container, registry):
        done = []

        class Closing(TerminableServiceProvider):
            def register(self):
                pass

            def boot(self):
                raise RuntimeError("no")

            def terminate(self):
                done.append(True)

        registry.register(Closing(container))
        with pytest.raises(ProviderBootError):
            await registry.boot()

        await registry.terminate()
        assert done == [True]
        assert registry.state is LifecycleState.ERROR


class TestDeferredPromotion:
    """Deferred providers are registered and booted at most once."""

    def test_first_request_promotes_provider(self, container, registry):
        provider = MailProvider(container)
        registry.register(provider)

        assert provider.is_loaded() is False
        assert provider not in registry.providers()
        assert provider in registry.deferred_providers()

        mailer = container.get("Mailer")

        assert isinstance(mailer, Mailer)
        assert provider.is_loaded() is True
        assert provider in registry.providers()
        assert provider not in registry.deferred_providers()

    @pytest.mark.asyncio
    async def test_promotion_before_and_after_boot_happens_once(self, container, registry):
        provider = MailProvider(container)
        registry.register(provider)

        container.get("Mailer")
        container.get("Mailer")
        await registry.boot()
        container.get("Mailer")
        registry.resolve("Mailer")

        assert provider.registered == 1
        assert provider.booted == 1

    @pytest.mark.asyncio
    async def test_promotion_after_boot_also_boots(self, container, registry):
        provider = MailProvider(container)
        registry.register(provider)
        await registry.boot()
        assert provider.booted == 0

        registry.resolve("Mailer")
        assert (provider.registered, provider.booted) == (1, 1)
        assert registry.stats()["promotions"] == 1

    @pytest.mark.asyncio
    async def test_async_hooks_need_aresolve_inside_a_loop(self, container, registry):
        class AsyncMail(DeferredServiceProvider):
            provides = ("Mailer",)

            async def register(self):
                self.singleton("Mailer", Mailer)

        provider = AsyncMail(container)
        registry.register(provider)

        with pytest.raises(AsyncResolutionError):
            container.get("Mailer")
        assert provider.is_loaded() is False

        assert isinstance(await registry.aresolve("Mailer"), Mailer)
        assert provider.is_loaded() is True

    def test_async_hooks_run_on_a_fresh_loop_when_none_is_running(self, container, registry):
        class AsyncMail(DeferredServiceProvider):
            provides = ("Mailer",)

            async def register(self):
                self.singleton("Mailer", Mailer)

        registry.register(AsyncMail(container))
        assert isinstance(container.get("Mailer"), Mailer)

    def test_failed_promotion_moves_to_error(self, container, registry):
        class Broken(DeferredServiceProvider):
            provides = ("Mailer",)

            def register(self):
                raise RuntimeError("smtp down")

        registry.register(Broken(container))
        with pytest.raises(ProviderBootError, match="smtp down"):
            container.get("Mailer")
        assert registry.state is LifecycleState.ERROR

    def test_can_resolve_includes_deferred_identifiers(self, container, registry):
        registry.register(MailProvider(container))
        assert registry.can_resolve("Mailer") is True
        assert container.is_bound("Mailer") is False
        assert registry.can_resolve("Other") is False


class TestIntrospection:
    def test_stats_and_clear(self, container, registry):
        registry.register(RecordingProvider(container, []))
        registry.register(MailProvider(container))

        stats = registry.stats()
        assert stats["total_providers"] == 1
        assert stats["deferred_providers"] == 1
        assert stats["state"] == "registered"
        assert stats["pending_deferred"] == ["MailProvider"]

        registry.clear()
        assert registry.providers() == []
        assert registry.deferred_providers() == []
        assert registry.state is LifecycleState.CREATED

    def test_terminable_providers(self, container, registry):
        class Closable(TerminableServiceProvider):
            def register(self):
                pass

        closable = Closable(container)
        registry.register(closable)
        registry.register(RecordingProvider(container, []))
        assert registry.terminable_providers() == [closable]
