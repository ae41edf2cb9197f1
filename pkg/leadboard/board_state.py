"""
In-memory projection of the board: columns, leads and customers.

Only the Reconciliation Controller writes to it; rendering and the ordering
engine read it. Entities are kept in insertion order (the order the store
returned them, then creation order), which is what ties in ``order`` fall back on.

Every local write through ``apply_patch`` bumps a per-field touch counter so the
controller can tell which fields changed locally while a remote call was in
flight. ``replace_all`` (resync) bumps ``epoch`` so responses to calls issued
before the reload can be recognised as stale.
"""
from typing import List, Dict, Any, Iterable, Set, Tuple

from .ordering import column_members
from .schema import EntityKind, Column, Lead, Customer


class BoardState:
    """Authoritative local view of the board."""

    def __init__(self):
        self.columns: Dict[str, Column] = {}
        self.leads: Dict[str, Lead] = {}
        self.customers: Dict[str, Customer] = {}
        self.epoch = 0
        self._seq = 0
        self._touches: Dict[Tuple[EntityKind, str], Dict[str, int]] = {}

    def _table(self, kind: EntityKind) -> Dict[str, Any]:
        if kind is EntityKind.COLUMN:
            return self.columns
        if kind is EntityKind.LEAD:
            return self.leads
        return self.customers

    # ── Reads ────────────────────────────────────────────────────────────────

    def get(self, kind: EntityKind, entity_id: str):
        return self._table(kind).get(entity_id)

    def columns_in_order(self) -> List[Column]:
        """Columns left to right; equal orders fall back to id."""
        return sorted(self.columns.values(), key=lambda c: (c.order, c.id))

    def leads_in_column(self, column_id: str) -> List[Lead]:
        """Non-completed leads of a column, ascending by order (stable)."""
        return column_members(self.leads.values(), column_id)

    def completed_leads(self) -> List[Lead]:
        """Soft-deleted leads kept for history. No ordering guarantee."""
        return [lead for lead in self.leads.values() if lead.is_completed]

    def orphaned_leads(self) -> List[Lead]:
        """Leads pointing at a column that no longer exists (never rendered)."""
        return [lead for lead in self.leads.values() if lead.column_id not in self.columns]

    # ── Writes ───────────────────────────────────────────────────────────────

    def apply_patch(self, kind: EntityKind, entity_id: str, fields: Dict[str, Any]) -> bool:
        """Replace matching fields on the entity. Returns False (no-op) if it is absent."""
        entity = self.get(kind, entity_id)
        if entity is None:
            return False
        known = set(entity.field_names())
        touches = self._touches.setdefault((kind, entity_id), {})
        for name, value in fields.items():
            if name not in known or name == "id":
                continue
            setattr(entity, name, value)
            self._seq += 1
            touches[name] = self._seq
        return True

    def insert(self, kind: EntityKind, entity) -> None:
        self._table(kind)[entity.id] = entity

    def remove(self, kind: EntityKind, entity_id: str):
        self._touches.pop((kind, entity_id), None)
        return self._table(kind).pop(entity_id, None)

    def remove_column(self, column_id: str) -> List[Lead]:
        """Drop a column and all of its leads in one step. Returns the removed leads."""
        self.remove(EntityKind.COLUMN, column_id)
        removed = [lead for lead in self.leads.values() if lead.column_id == column_id]
        for lead in removed:
            self.remove(EntityKind.LEAD, lead.id)
        return removed

    def rekey(self, kind: EntityKind, old_id: str, new_id: str) -> bool:
        """Give an entity its server-assigned id, keeping its position."""
        table = self._table(kind)
        entity = table.get(old_id)
        if entity is None:
            return False
        entity.id = new_id
        rebuilt = {(new_id if key == old_id else key): value for key, value in table.items()}
        table.clear()
        table.update(rebuilt)
        touches = self._touches.pop((kind, old_id), None)
        if touches is not None:
            self._touches[(kind, new_id)] = touches
        if kind is EntityKind.COLUMN:
            for lead in self.leads.values():
                if lead.column_id == old_id:
                    lead.column_id = new_id
        return True

    def merge_remote(self, kind: EntityKind, remote, names: Iterable[str]) -> bool:
        """Copy the given fields from a store response without counting them as local writes."""
        entity = self.get(kind, remote.id)
        if entity is None:
            return False
        for name in names:
            if name != "id":
                setattr(entity, name, getattr(remote, name))
        return True

    def replace_all(self, columns: Iterable[Column], leads: Iterable[Lead], customers: Iterable[Customer]) -> int:
        """Swap in a fresh snapshot from the store. Returns the new epoch."""
        self.columns = {c.id: c for c in columns}
        self.leads = {lead.id: lead for lead in leads}
        self.customers = {c.id: c for c in customers}
        self._touches.clear()
        self.epoch += 1
        return self.epoch

    # ── Touch tracking ───────────────────────────────────────────────────────

    def touch_snapshot(self, kind: EntityKind, entity_id: str) -> Dict[str, int]:
        return dict(self._touches.get((kind, entity_id), {}))

    def touched_since(self, kind: EntityKind, entity_id: str, snapshot: Dict[str, int]) -> Set[str]:
        """Fields written locally after ``snapshot`` was taken."""
        current = self._touches.get((kind, entity_id), {})
        return {name for name, seq in current.items() if snapshot.get(name) != seq}
