"""
decision_sdk.tier2_storage.store
──────────────────────────────────
Abstract entity stores. The decision core needs only get / filter / create /
update, plus an atomic create-if-absent used to make variant assignment
race-free. Any persistence engine can sit behind the protocol; the
in-memory implementation here backs tests and local development.

Adapters translate their own failures into StoreError. The core never
retries a store call.

Select via: DECISION_STORE_BACKEND=memory
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, Protocol, TypeVar, runtime_checkable

from decision_sdk.tier0_core.errors import ConfigurationError, ConflictError, NotFoundError
from decision_sdk.tier1_runtime.clock import ensure_utc
from decision_sdk.tier2_storage.entities import (
    ABTest,
    ComplianceRule,
    DarkPatternDetection,
    Delivery,
    Entity,
    Event,
    IntegrityAlert,
    Participant,
    Profile,
    Rule,
    RuleTrigger,
    Template,
    Variant,
)

T = TypeVar("T", bound=Entity)

Predicate = Callable[[Any], bool]


@runtime_checkable
class EntityStore(Protocol[T]):
    async def get(self, record_id: str) -> T | None: ...

    async def filter(
        self,
        predicate: Predicate | None = None,
        sort: str | None = None,
        limit: int | None = None,
    ) -> list[T]: ...

    async def create(self, record: T) -> T: ...

    async def update(self, record_id: str, patch: dict[str, Any]) -> T: ...

    async def create_if_absent(
        self, record: T, key: tuple[str, ...]
    ) -> tuple[T, bool]: ...


class InMemoryEntityStore(Generic[T]):
    """
    Dict-backed store. Reads return deep copies, so callers work on a
    point-in-time snapshot and cannot mutate stored state by accident.
    """

    def __init__(self, entity: str = "record") -> None:
        self.entity = entity
        self._records: dict[str, T] = {}
        self._lock = asyncio.Lock()

    async def get(self, record_id: str) -> T | None:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    async def filter(
        self,
        predicate: Predicate | None = None,
        sort: str | None = None,
        limit: int | None = None,
    ) -> list[T]:
        rows = [r for r in self._records.values() if predicate is None or predicate(r)]
        if sort:
            descending = sort.startswith("-")
            name = sort.lstrip("-")
            rows.sort(key=lambda r: _sort_key(r, name), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [r.model_copy(deep=True) for r in rows]

    async def create(self, record: T) -> T:
        async with self._lock:
            if record.id in self._records:
                raise ConflictError(
                    user_message=f"{self.entity} already exists.",
                    detail=f"{self.entity} {record.id!r} already exists",
                )
            self._records[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def update(self, record_id: str, patch: dict[str, Any]) -> T:
        async with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise NotFoundError(self.entity, record_id)
            merged = {**current.model_dump(), **patch, "id": record_id}
            updated = type(current).model_validate(merged)
            self._records[record_id] = updated
        return updated.model_copy(deep=True)

    async def create_if_absent(
        self, record: T, key: tuple[str, ...]
    ) -> tuple[T, bool]:
        """Insert *record* unless one with the same *key* field values exists."""
        wanted = tuple(getattr(record, k) for k in key)
        async with self._lock:
            for existing in self._records.values():
                if tuple(getattr(existing, k, None) for k in key) == wanted:
                    return existing.model_copy(deep=True), False
            self._records[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True), True

    def __len__(self) -> int:
        return len(self._records)


def _sort_key(record: Any, name: str) -> tuple[bool, Any]:
    # Missing values sort before present ones ascending, after them descending.
    value = getattr(record, name, None)
    if isinstance(value, datetime):
        value = ensure_utc(value)
    return (value is not None, value)


# ── Store bundle ──────────────────────────────────────────────────────────────

@dataclass
class Stores:
    """Every store the decision core touches, injected as one unit."""
    tests: EntityStore[ABTest]
    variants: EntityStore[Variant]
    participants: EntityStore[Participant]
    rules: EntityStore[Rule]
    templates: EntityStore[Template]
    deliveries: EntityStore[Delivery]
    triggers: EntityStore[RuleTrigger]
    profiles: EntityStore[Profile]
    events: EntityStore[Event]
    compliance_rules: EntityStore[ComplianceRule]
    alerts: EntityStore[IntegrityAlert]
    dark_patterns: EntityStore[DarkPatternDetection]

    @classmethod
    def in_memory(cls) -> "Stores":
        return cls(
            tests=InMemoryEntityStore("ab_test"),
            variants=InMemoryEntityStore("variant"),
            participants=InMemoryEntityStore("participant"),
            rules=InMemoryEntityStore("rule"),
            templates=InMemoryEntityStore("template"),
            deliveries=InMemoryEntityStore("delivery"),
            triggers=InMemoryEntityStore("rule_trigger"),
            profiles=InMemoryEntityStore("profile"),
            events=InMemoryEntityStore("event"),
            compliance_rules=InMemoryEntityStore("compliance_rule"),
            alerts=InMemoryEntityStore("integrity_alert"),
            dark_patterns=InMemoryEntityStore("dark_pattern_detection"),
        )


_stores: Stores | None = None


def get_stores() -> Stores:
    global _stores
    if _stores is not None:
        return _stores

    from decision_sdk.tier0_core.config import get_config

    backend = get_config().store_backend.lower()
    if backend == "memory":
        _stores = Stores.in_memory()
    else:
        raise ConfigurationError(
            user_message=f"Unknown DECISION_STORE_BACKEND: {backend!r}. Supported: memory"
        )
    return _stores


def set_stores(stores: Stores | None) -> None:
    """Install stores (host adapters, or fresh in-memory stores in tests)."""
    global _stores
    _stores = stores


__all__ = [
    "EntityStore", "InMemoryEntityStore", "Stores", "get_stores", "set_stores",
]
