"""Shared test fixtures: repo root on sys.path and a scripted in-memory store."""

import asyncio
import sys
from pathlib import Path
from typing import Optional, List, Dict, Any

import pytest

# Ensure pkg/ and the top-level scripts are importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from pkg.leadboard.client import DEFAULT_SORT
from pkg.leadboard.errors import StoreUnavailable, NotFound
from pkg.leadboard.schema import EntityKind, ENTITY_TYPES, Column, Lead, Customer


class FakeCollection:
    """
    In-memory collection with the EntityCollection interface.

    Documents are kept wire-encoded so the entity converters are exercised.
    ``hold(op)`` returns an asyncio.Event the call waits on before answering;
    ``fail(op, entity_id)`` makes the next matching call raise StoreUnavailable.
    """

    def __init__(self, kind: EntityKind):
        self.kind = kind
        self.entity_type = ENTITY_TYPES[kind]
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures: Dict[tuple, int] = {}
        self._seq = 0
        self._clock = 0

    # ── scripting ──

    def hold(self, op: str) -> asyncio.Event:
        self.gates[op] = asyncio.Event()
        return self.gates[op]

    def fail(self, op: str, entity_id: Optional[str] = None, times: int = 1) -> None:
        self.failures[(op, entity_id)] = times

    def calls_for(self, op: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == op]

    def seed(self, entity) -> None:
        """Put an entity straight into the store (no call recorded)."""
        doc = self.entity_type.to_wire(entity.to_dict())
        doc["$id"] = entity.id
        doc["$createdAt"] = self._stamp()
        doc["$updatedAt"] = doc["$createdAt"]
        self.docs[entity.id] = doc

    def entity(self, entity_id: str):
        return self.entity_type.from_wire(self.docs[entity_id])

    def _stamp(self) -> str:
        self._clock += 1
        return f"2024-01-01T00:{self._clock // 60:02d}:{self._clock % 60:02d}.000+00:00"

    async def _gate(self, op: str, entity_id: Optional[str] = None, *extra) -> None:
        self.calls.append((op, entity_id) + extra)
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        for key in ((op, entity_id), (op, None)):
            if self.failures.get(key):
                self.failures[key] -= 1
                raise StoreUnavailable(f"{op} {entity_id or ''} failed")

    # ── EntityCollection interface ──

    async def list(self, sort=None, limit=None):
        await self._gate("list")
        entities = [self.entity_type.from_wire(doc) for doc in self.docs.values()]
        attribute = sort or DEFAULT_SORT[self.kind]
        return sorted(entities, key=lambda e: getattr(e, attribute))

    async def get(self, entity_id):
        await self._gate("get", entity_id)
        if entity_id not in self.docs:
            raise NotFound(entity_id)
        return self.entity(entity_id)

    async def create(self, fields):
        await self._gate("create", None, dict(fields))
        self._seq += 1
        entity_id = f"{self.kind.value}-{self._seq}"
        doc = self.entity_type.to_wire(fields)
        doc["$id"] = entity_id
        doc["$createdAt"] = self._stamp()
        doc["$updatedAt"] = doc["$createdAt"]
        self.docs[entity_id] = doc
        return self.entity(entity_id)

    async def update(self, entity_id, fields):
        await self._gate("update", entity_id, dict(fields))
        if entity_id not in self.docs:
            raise NotFound(entity_id)
        self.docs[entity_id].update(self.entity_type.to_wire(fields))
        self.docs[entity_id]["$updatedAt"] = self._stamp()
        return self.entity(entity_id)

    async def delete(self, entity_id):
        await self._gate("delete", entity_id)
        self.docs.pop(entity_id, None)


class FakeStore:
    """Three FakeCollections behind the EntityStoreClient interface."""

    def __init__(self):
        self._collections = {kind: FakeCollection(kind) for kind in EntityKind}

    @property
    def columns(self) -> FakeCollection:
        return self._collections[EntityKind.COLUMN]

    @property
    def leads(self) -> FakeCollection:
        return self._collections[EntityKind.LEAD]

    @property
    def customers(self) -> FakeCollection:
        return self._collections[EntityKind.CUSTOMER]

    def collection(self, kind: EntityKind) -> FakeCollection:
        return self._collections[kind]


async def spin(times: int = 10) -> None:
    """Let scheduled tasks run until they block."""
    for _ in range(times):
        await asyncio.sleep(0)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def seeded_store():
    """Two columns: A (a1, a2) and B (b1, b2, b3), plus a completed lead in A."""
    store = FakeStore()
    store.columns.seed(Column(id="A", title="Lead", order=0))
    store.columns.seed(Column(id="B", title="Follow Up", order=1))
    store.leads.seed(Lead(id="a1", title="FIRST", column_id="A", order=0))
    store.leads.seed(Lead(id="a2", title="SECOND", column_id="A", order=1))
    store.leads.seed(Lead(id="done", title="CLOSED", column_id="A", order=2, is_completed=True))
    store.leads.seed(Lead(id="b1", title="B ONE", column_id="B", order=0))
    store.leads.seed(Lead(id="b2", title="B TWO", column_id="B", order=1))
    store.leads.seed(Lead(id="b3", title="B THREE", column_id="B", order=2))
    store.customers.seed(Customer(id="c1", name="ACME", phone="555-0100", email="ops@acme.test"))
    return store
