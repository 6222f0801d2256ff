# Overview: Post-commit side effects (audit, events, cache invalidation) and the transaction wrapper services share.

"""
Side-effect invariants (authoritative)

- Nothing here runs while a stock transaction is open: effects are collected
  into an EffectBatch during the transaction and dispatched after commit.
- A rolled-back transaction dispatches nothing.
- Dispatch is best-effort. Each failing collaborator call is logged with its
  traceback and skipped; the business result already committed stands.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from ..time_utils import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# CACHE KEYS
# =============================================================================

def stock_list_key(tenant_id: int) -> str:
    return f"stock:list:{tenant_id}"


def stock_detail_key(tenant_id: int, product_id: int, location) -> str:
    return f"stock:detail:{tenant_id}:{product_id}:{location}"


def transfers_key(tenant_id: int) -> str:
    return f"transfers:{tenant_id}"


# =============================================================================
# DEFAULT COLLABORATORS
# =============================================================================

class LoggingPublisher:
    """Default EventPublisher: writes every event to the log."""

    def publish(self, event_name: str, payload: dict) -> None:
        logger.info("event %s %s", event_name, payload)


class RecordingPublisher:
    """EventPublisher that keeps published events in memory."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def publish(self, event_name: str, payload: dict) -> None:
        self.events.append((event_name, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class NullCache:
    def invalidate(self, *keys: str) -> None:
        return None


# =============================================================================
# COLLECTION + DISPATCH
# =============================================================================

@dataclass
class EffectBatch:
    audit: list[dict] = field(default_factory=list)
    events: list[tuple[str, dict]] = field(default_factory=list)
    cache_keys: list[str] = field(default_factory=list)

    def audit_entry(
        self,
        *,
        action: str,
        entity_type: str,
        entity_id: int,
        tenant_id: int,
        actor_id: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> None:
        self.audit.append({
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "tenant_id": tenant_id,
            "actor_id": actor_id,
            "details": details or {},
        })

    def event(self, event_name: str, payload: dict) -> None:
        self.events.append((event_name, payload))

    def invalidate(self, *keys: str) -> None:
        for key in keys:
            if key not in self.cache_keys:
                self.cache_keys.append(key)


class PostCommitEffects:
    def __init__(self, *, audit_log, publisher=None, cache=None):
        self.audit_log = audit_log
        self.publisher = publisher or LoggingPublisher()
        self.cache = cache or NullCache()

    def dispatch(self, batch: EffectBatch) -> None:
        for entry in batch.audit:
            try:
                self.audit_log.record(**entry)
            except Exception:
                logger.exception("Audit write failed for %s %s", entry["action"], entry["entity_id"])

        for event_name, payload in batch.events:
            try:
                self.publisher.publish(event_name, payload)
            except Exception:
                logger.exception("Event publish failed for %s", event_name)

        if batch.cache_keys:
            try:
                self.cache.invalidate(*batch.cache_keys)
            except Exception:
                logger.exception("Cache invalidation failed for %s", batch.cache_keys)


class TransactionalService:
    """
    Base for engine services.

    _transact(func) runs func(effects) inside one unit of work and dispatches
    the collected effects once the outermost unit of work has committed.
    Nothing is dispatched for a rolled-back transaction, and a retried
    transaction starts from an empty batch.
    """

    def __init__(self, repos, effects: PostCommitEffects, clock: Callable[[], Any] = utcnow):
        self.repos = repos
        self.effects = effects
        self.clock = clock

    def _transact(self, func: Callable[[EffectBatch], T]) -> T:
        def _op():
            batch = EffectBatch()
            result = func(batch)
            self.repos.uow.after_commit(lambda: self.effects.dispatch(batch))
            return result

        return self.repos.uow.run(_op)
