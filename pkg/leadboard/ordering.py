"""
Ordering engine: pure functions from (board leads, drag event) to a move.

A drop always appends the lead to the end of the target column. Fine-grained
pointer position is not persisted: the store keeps a single integer ``order``
per lead, so round-tripping on every pointer movement would thrash the network.
While dragging, only the lead's column membership changes (``compute_preview``).

Drop targets are plain ids; whether an id names a column or a lead is resolved
here, so any gesture layer (pointer, keyboard move commands) can drive it.
"""
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Iterable, Tuple, Any

from .schema import Lead


@dataclass(frozen=True)
class DragEvent:
    """Abstract drag gesture: the dragged lead and what it is over (None = nowhere)."""
    active_id: str
    over_id: Optional[str] = None


@dataclass(frozen=True)
class DragOrigin:
    """Where the dragged lead was (as persisted) when the drag started."""
    lead_id: str
    column_id: str
    order: int


@dataclass
class MovePlan:
    """Result of a drop: the lead's new position plus any renumbering needed."""
    lead_id: str
    target_column_id: str
    target_order: int
    # other lead id -> new order, so orders in the target column stay unique
    renumbered: Dict[str, int] = field(default_factory=dict)

    def patches(self) -> List[Tuple[str, Dict[str, Any]]]:
        """(lead id, fields) updates to persist, the moved lead first."""
        moves = [(self.lead_id, {"column_id": self.target_column_id, "order": self.target_order})]
        moves.extend((lead_id, {"order": order}) for lead_id, order in self.renumbered.items())
        return moves


def column_members(leads: Iterable[Lead], column_id: str, include_completed: bool = False) -> List[Lead]:
    """Leads of a column sorted by order; ties keep their sequence order (stable sort)."""
    members = [
        lead for lead in leads
        if lead.column_id == column_id and (include_completed or not lead.is_completed)
    ]
    return sorted(members, key=lambda lead: lead.order)


def append_order(leads: Iterable[Lead], column_id: str) -> int:
    """An order value past every lead in the column (completed ones included)."""
    orders = [lead.order for lead in leads if lead.column_id == column_id]
    return max(orders) + 1 if orders else 0


def resolve_target_column(
    leads_by_id: Dict[str, Lead],
    column_ids: Iterable[str],
    over_id: Optional[str],
    fallback_column_id: str,
) -> str:
    """Column under the pointer: the column itself, the hovered lead's column, or the fallback."""
    if over_id is not None:
        if over_id in set(column_ids):
            return over_id
        over_lead = leads_by_id.get(over_id)
        if over_lead is not None:
            return over_lead.column_id
    return fallback_column_id


def compute_preview(leads: Iterable[Lead], column_ids: Iterable[str], event: DragEvent) -> Optional[str]:
    """
    Drag-over: the column the active lead should transiently belong to.

    Returns None when membership does not change (or the lead is gone).
    """
    leads_by_id = {lead.id: lead for lead in leads}
    active = leads_by_id.get(event.active_id)
    if active is None or event.over_id is None:
        return None
    target = resolve_target_column(leads_by_id, column_ids, event.over_id, active.column_id)
    return target if target != active.column_id else None


def compute_move(
    leads: Iterable[Lead],
    column_ids: Iterable[str],
    event: DragEvent,
    origin: Optional[DragOrigin] = None,
) -> Optional[MovePlan]:
    """
    Drop: where the active lead goes, or None when nothing needs persisting.

    None is returned when the lead no longer exists (deleted mid-drag), when the
    drag was cancelled (``over_id`` is None), and when the lead is dropped back
    into its own column while already last there.

    ``origin`` is the lead's persisted position at drag start; drag-over may have
    moved it to another column locally in the meantime.
    """
    leads = list(leads)
    leads_by_id = {lead.id: lead for lead in leads}
    active = leads_by_id.get(event.active_id)
    if active is None or event.over_id is None:
        return None

    home_column = origin.column_id if origin else active.column_id
    home_order = origin.order if origin else active.order
    target = resolve_target_column(leads_by_id, column_ids, event.over_id, home_column)

    if target == home_column:
        at_home = active.copy(column_id=home_column, order=home_order)
        home = column_members(
            [at_home if lead.id == active.id else lead for lead in leads], home_column
        )
        if home and home[-1].id == active.id:
            return None

    others = column_members(
        [lead for lead in leads if lead.id != active.id], target, include_completed=True
    )
    target_order = len(others)

    renumbered = {}
    orders = [lead.order for lead in others]
    if len(set(orders)) != len(orders) or any(order >= target_order for order in orders):
        # Orders are sparse or duplicated: compact the column so the append is unique and last
        for index, lead in enumerate(others):
            if lead.order != index:
                renumbered[lead.id] = index

    return MovePlan(
        lead_id=active.id,
        target_column_id=target,
        target_order=target_order,
        renumbered=renumbered,
    )
