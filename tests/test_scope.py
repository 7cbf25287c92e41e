# tests/test_scope.py
import asyncio

import pytest

from keel.constants import SCOPE_REQUEST, SCOPE_SINGLETON, SCOPE_TRANSIENT
from keel.exceptions import ScopeError
from keel.scope import MISSING, ScopedCaches, ScopeManager


class Session:
    pass


class TestScopeManager:
    def test_singleton_and_transient_have_no_ids(self):
        scopes = ScopeManager()
        assert scopes.get_id(SCOPE_SINGLETON) is None
        assert scopes.activate(SCOPE_TRANSIENT, "x") is None
        scopes.deactivate(SCOPE_TRANSIENT, None)

    def test_request_activation_round_trip(self):
        scopes = ScopeManager()
        token = scopes.activate(SCOPE_REQUEST, "req-1")
        assert scopes.get_id(SCOPE_REQUEST) == "req-1"
        scopes.deactivate(SCOPE_REQUEST, token)
        assert scopes.get_id(SCOPE_REQUEST) is None

    def test_managers_do_not_share_request_ids(self):
        a, b = ScopeManager(), ScopeManager()
        token = a.activate(SCOPE_REQUEST, "req-a")
        try:
            assert b.get_id(SCOPE_REQUEST) is None
        finally:
            a.deactivate(SCOPE_REQUEST, token)

    def test_unknown_scope_is_rejected(self):
        scopes = ScopeManager()
        with pytest.raises(ScopeError):
            scopes.get_id("session")
        with pytest.raises(ScopeError):
            scopes.activate("session", "x")


class TestScopedCaches:
    def test_transient_cache_never_stores(self):
        caches = ScopedCaches()
        cache = caches.for_scope(ScopeManager(), SCOPE_TRANSIENT)
        cache.put("k", 1)
        assert cache.get("k") is MISSING

    def test_request_cache_requires_active_id(self):
        with pytest.raises(ScopeError, match="request_scope"):
            ScopedCaches().for_scope(ScopeManager(), SCOPE_REQUEST)

    def test_cleanup_scope_drops_only_that_request(self):
        caches = ScopedCaches()
        scopes = ScopeManager()
        for sid in ("r1", "r2"):
            token = scopes.activate(SCOPE_REQUEST, sid)
            caches.for_scope(scopes, SCOPE_REQUEST).put("k", sid)
            scopes.deactivate(SCOPE_REQUEST, token)

        caches.cleanup_scope(SCOPE_REQUEST, "r1")
        assert [v for _, v in caches.all_items()] == ["r2"]

    def test_evict_removes_key_everywhere(self):
        caches = ScopedCaches()
        scopes = ScopeManager()
        caches.singleton().put("k", "s")
        token = scopes.activate(SCOPE_REQUEST, "r1")
        caches.for_scope(scopes, SCOPE_REQUEST).put("k", "r")
        scopes.deactivate(SCOPE_REQUEST, token)

        caches.evict("k")
        assert list(caches.all_items()) == []


class TestRequestScopedBindings:
    def test_one_instance_per_request(self, container):
        container.request(Session, Session)

        with container.request_scope() as rid:
            assert isinstance(rid, str)
            first = container.get(Session)
            assert container.get(Session) is first
        with container.request_scope():
            assert container.get(Session) is not first

    def test_resolution_outside_request_fails(self, container):
        container.request(Session, Session)
        with pytest.raises(ScopeError):
            container.get(Session)

    def test_reentering_same_request_id_keeps_instances(self, container):
        container.request(Session, Session)
        with container.request_scope("r-1"):
            outer = container.get(Session)
            with container.request_scope("r-1"):
                assert container.get(Session) is outer
            assert container.get(Session) is outer

    def test_child_request_scope_releases_parent_instances(self, container):
        container.request(Session, Session)
        child = container.create_child()

        with child.request_scope("r-1"):
            first = child.get(Session)
        with child.request_scope("r-1"):
            assert child.get(Session) is not first

    def test_parent_request_scope_releases_child_instances(self, container):
        child = container.create_child()
        child.request(Session, Session)

        for _ in range(3):
            with container.request_scope():
                child.get(Session)
                assert child.stats()["cached_instances"] == 1

        assert child.stats()["cached_instances"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_tasks_keep_separate_requests(self, container):
        container.request(Session, Session)

        async def handle(rid):
            with container.request_scope(rid):
                first = container.get(Session)
                await asyncio.sleep(0)
                return first, container.get(Session)

        (a1, a2), (b1, b2) = await asyncio.gather(handle("a"), handle("b"))
        assert a1 is a2
        assert b1 is b2
        assert a1 is not b1
