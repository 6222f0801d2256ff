# Overview: Pytest coverage for post-commit audit, event and cache dispatch.

"""
Side effects run only after the unit of work commits. A failing audit log,
publisher or cache never undoes a committed write.
"""

import pytest

from stockledger.errors import InsufficientStock
from stockledger.services.side_effects import (
    EffectBatch,
    PostCommitEffects,
    RecordingPublisher,
    stock_detail_key,
    stock_list_key,
)

from conftest import PRODUCT, STORE, TENANT


class RecordingCache:
    def __init__(self):
        self.keys = []

    def invalidate(self, *keys):
        self.keys.extend(keys)


class BrokenAuditLog:
    def record(self, **entry):
        raise RuntimeError("audit store unavailable")


class BrokenPublisher:
    def publish(self, event_name, payload):
        raise RuntimeError("broker unavailable")


class TestEffectBatch:
    def test_invalidate_dedupes_in_order(self):
        batch = EffectBatch()
        batch.invalidate("a", "b")
        batch.invalidate("b", "c")
        assert batch.cache_keys == ["a", "b", "c"]

    def test_audit_entry_defaults_details(self):
        batch = EffectBatch()
        batch.audit_entry(action="X", entity_type="t", entity_id=1, tenant_id=TENANT)
        assert batch.audit[0]["details"] == {}
        assert batch.audit[0]["actor_id"] is None


class TestDispatch:
    def test_failures_are_isolated(self, caplog):
        publisher = RecordingPublisher()
        cache = RecordingCache()
        effects = PostCommitEffects(audit_log=BrokenAuditLog(), publisher=publisher, cache=cache)
        batch = EffectBatch()
        batch.audit_entry(action="X", entity_type="t", entity_id=1, tenant_id=TENANT)
        batch.event("thing.happened", {"id": 1})
        batch.invalidate("k")

        effects.dispatch(batch)

        assert publisher.names() == ["thing.happened"]
        assert cache.keys == ["k"]
        assert "Audit write failed" in caplog.text


class TestEngineEffects:
    def test_committed_write_survives_broken_collaborators(self, engine, key):
        engine.effects.audit_log = BrokenAuditLog()
        engine.effects.publisher = BrokenPublisher()

        engine.stock.increment_stock(key, 4)

        assert engine.stock.get_stock_level(key).quantity == 4

    def test_rolled_back_operation_dispatches_nothing(self, engine, key, publisher, audit_log):
        engine.stock.increment_stock(key, 1)
        publisher.events.clear()
        audit_log.entries.clear()

        with pytest.raises(InsufficientStock):
            engine.allocator.allocate(key, 5)

        assert publisher.events == []
        assert audit_log.entries == []

    def test_cache_keys_invalidated_after_commit(self, engine, key):
        cache = RecordingCache()
        engine.effects.cache = cache

        engine.stock.increment_stock(key, 4)

        assert stock_list_key(TENANT) in cache.keys
        assert stock_detail_key(TENANT, PRODUCT, STORE) in cache.keys

    def test_audit_written_after_commit(self, engine, key, audit_log):
        engine.stock.increment_stock(key, 4, created_by=8)

        entry = audit_log.entries[-1]
        assert entry["action"] == "STOCK_MOVEMENT_RECORDED"
        assert entry["tenant_id"] == TENANT
        assert entry["actor_id"] == 8


class TestAfterCommit:
    def test_runs_immediately_outside_a_transaction(self, engine):
        calls = []
        engine.repos.uow.after_commit(lambda: calls.append("ran"))
        assert calls == ["ran"]

    def test_waits_for_outermost_run(self, engine):
        calls = []

        def _inner():
            engine.repos.uow.after_commit(lambda: calls.append("inner"))

        def _outer():
            engine.repos.uow.run(_inner)
            assert calls == []

        engine.repos.uow.run(_outer)
        assert calls == ["inner"]

    def test_dropped_on_rollback(self, engine):
        calls = []

        def _op():
            engine.repos.uow.after_commit(lambda: calls.append("ran"))
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            engine.repos.uow.run(_op)
        engine.repos.uow.run(lambda: None)
        assert calls == []
