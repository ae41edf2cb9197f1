"""
Reconciliation controller: optimistic apply, remote persist, confirm or resync.

Every mutating action goes through one policy:

  1. apply the change to BoardState immediately
  2. persist it with one Entity Store Client call
  3. on success, merge server-computed fields (never over fields changed locally since)
  4. on failure, reload everything from the store (``resync``) and emit a notice

Mutations are serialized per entity id with a mailbox: while a call for an id
is in flight, later mutations for the same id wait and are applied only after
it settles. Different ids never wait on each other.

Mutation lifecycle:
  IDLE → APPLIED → CONFIRMED | FAILED_RESYNC → IDLE

Resync bumps BoardState.epoch; responses to calls issued under an older epoch
are dropped.
"""
import asyncio
import logging
import uuid
from collections import deque
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Deque, Tuple

from .board_state import BoardState
from .errors import ValidationError
from .ordering import MovePlan
from .schema import EntityKind, READ_ONLY_FIELDS

logger = logging.getLogger(__name__)

PROVISIONAL_PREFIX = "local-"
SERVER_FIELDS = ("created_at", "updated_at")


def new_provisional_id() -> str:
    """Local id for an entity whose create call has not returned yet."""
    return f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex[:12]}"


def is_provisional(entity_id: str) -> bool:
    return entity_id.startswith(PROVISIONAL_PREFIX)


class MutationState(Enum):
    """States of one in-flight mutation."""
    IDLE = "idle"
    APPLIED = "applied"              # optimistic change visible locally
    CONFIRMED = "confirmed"          # store accepted it
    FAILED_RESYNC = "failed_resync"  # store rejected it, board reloaded


ALLOWED_NEXT = {
    MutationState.IDLE: [MutationState.APPLIED],
    MutationState.APPLIED: [MutationState.CONFIRMED, MutationState.FAILED_RESYNC],
    MutationState.CONFIRMED: [MutationState.IDLE],
    MutationState.FAILED_RESYNC: [MutationState.IDLE],
}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Mutations
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Mutation:
    """One action against one entity. Subclasses define apply / persist / confirm."""

    action = "mutation"

    def __init__(self, kind: EntityKind, entity_id: str, fields: Optional[Dict[str, Any]] = None,
                 resync_on_failure: bool = True):
        self.kind = kind
        self.entity_id = entity_id
        self.fields = dict(fields or {})
        self.resync_on_failure = resync_on_failure
        self.state = MutationState.IDLE
        self.applied = False
        self.skipped = False
        self.needs_resync = False
        self.epoch: Optional[int] = None
        self.touches: Dict[str, int] = {}
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()

    def __repr__(self) -> str:
        return f"<{self.action} {self.kind.value} {self.entity_id} {self.state.value}>"

    def transition_to(self, new_state: MutationState) -> bool:
        """Attempt a state transition. Returns True if successful."""
        if new_state not in ALLOWED_NEXT.get(self.state, []):
            return False
        self.state = new_state
        return True

    def apply(self, state: BoardState) -> bool:
        """Optimistic local change. False means the mutation has nothing to act on."""
        return True

    async def persist(self, controller: "ReconciliationController"):
        raise NotImplementedError

    def merge_names(self, result) -> List[str]:
        """Fields of the store response that may be merged back."""
        return list(self.fields) + list(SERVER_FIELDS)

    def confirm(self, state: BoardState, result, skip: set) -> Optional[str]:
        """Fold a successful response into the state. Returns a new id when the entity got one."""
        if result is not None:
            state.merge_remote(self.kind, result, [n for n in self.merge_names(result) if n not in skip])
        return None


class UpdateMutation(Mutation):
    """Partial field update. ``derive`` computes the fields from the entity at apply time."""

    action = "update"

    def __init__(self, kind, entity_id, fields=None, derive: Optional[Callable[[Any], Dict[str, Any]]] = None,
                 **kwargs):
        super().__init__(kind, entity_id, fields, **kwargs)
        self.derive = derive

    def apply(self, state: BoardState) -> bool:
        entity = state.get(self.kind, self.entity_id)
        if entity is None:
            return False
        if self.derive is not None:
            self.fields = self.derive(entity)
        return state.apply_patch(self.kind, self.entity_id, self.fields)

    async def persist(self, controller):
        return await controller.store.collection(self.kind).update(self.entity_id, self.fields)


class CreateMutation(Mutation):
    """Insert under a provisional id; the store assigns the real one."""

    action = "create"

    def __init__(self, kind, entity, **kwargs):
        fields = {k: v for k, v in entity.to_dict().items() if k not in READ_ONLY_FIELDS}
        super().__init__(kind, entity.id, fields, **kwargs)
        self.entity = entity

    def apply(self, state: BoardState) -> bool:
        state.insert(self.kind, self.entity)
        return True

    async def persist(self, controller):
        self.fields = controller.resolve_fields(self.fields)
        return await controller.store.collection(self.kind).create(self.fields)

    def merge_names(self, result) -> List[str]:
        return result.field_names()

    def confirm(self, state, result, skip):
        provisional_id = self.entity_id
        if not state.rekey(self.kind, provisional_id, result.id):
            return None
        state.merge_remote(self.kind, result, [n for n in self.merge_names(result) if n not in skip])
        return result.id


class DeleteMutation(Mutation):
    """Hard delete. Non-optimistic deletes leave the state alone (column cascade)."""

    action = "delete"

    def __init__(self, kind, entity_id, optimistic: bool = True, **kwargs):
        super().__init__(kind, entity_id, **kwargs)
        self.optimistic = optimistic

    def apply(self, state: BoardState) -> bool:
        if self.optimistic:
            state.remove(self.kind, self.entity_id)
        return True

    async def persist(self, controller):
        await controller.store.collection(self.kind).delete(self.entity_id)
        return None

    def confirm(self, state, result, skip):
        return None


class ColumnDeleteMutation(Mutation):
    """
    Cascading column delete.

    Not atomic against the store: the column's leads are deleted one by one
    (concurrently), then the column. A failed lead delete does not stop the
    column delete; the board is resynced afterwards so the orphan shows up in
    ``BoardState.orphaned_leads()``. Column and leads leave the local state
    together, only once the column delete has succeeded.
    """

    action = "delete_column"

    def __init__(self, column_id: str):
        super().__init__(EntityKind.COLUMN, column_id)
        self.lead_ids: List[str] = []
        self.failed_leads: List[str] = []

    async def persist(self, controller):
        lead_ids = [lead.id for lead in controller.state.leads.values() if lead.column_id == self.entity_id]
        self.lead_ids = lead_ids
        futures = [
            controller.submit(DeleteMutation(EntityKind.LEAD, lead_id, optimistic=False, resync_on_failure=False))
            for lead_id in lead_ids
        ]
        results = await asyncio.gather(*futures)
        self.failed_leads = [lead_id for lead_id, ok in zip(lead_ids, results) if not ok]
        await controller.store.columns.delete(self.entity_id)
        return None

    def confirm(self, state, result, skip):
        # Leads that joined the column after the cascade started are still in the store
        latecomers = [
            lead.id for lead in state.leads.values()
            if lead.column_id == self.entity_id and lead.id not in self.lead_ids
        ]
        state.remove_column(self.entity_id)
        if latecomers:
            logger.warning(f"Column {self.entity_id} deleted while leads were added to it: {', '.join(latecomers)}")
            self.needs_resync = True
        if self.failed_leads:
            logger.warning(
                f"Column {self.entity_id} deleted but {len(self.failed_leads)} lead(s) could not be: "
                f"{', '.join(self.failed_leads)}"
            )
            self.needs_resync = True
        return None


class _Mailbox:
    """Pending mutations for one entity; the head is the one in flight."""

    def __init__(self, key: Tuple[EntityKind, str]):
        self.key = key
        self.pending: Deque[Mutation] = deque()
        self.task: Optional[asyncio.Task] = None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Controller
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ReconciliationController:
    """Sole writer of BoardState and sole caller of store mutations."""

    def __init__(self, store, state: BoardState, max_notices: int = 50):
        self.store = store
        self.state = state
        self.notices: Deque[str] = deque(maxlen=max_notices)
        self.subscribers: Dict[str, list] = {}  # event_type -> list of callbacks
        self._mailboxes: Dict[Tuple[EntityKind, str], _Mailbox] = {}
        self._aliases: Dict[str, str] = {}  # provisional id -> server id
        self._resync_task: Optional[asyncio.Task] = None

    # ── Events ───────────────────────────────────────────────────────────────

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """Register a callback for "changed", "resynced" or "notice"."""
        if event_type not in self.subscribers:
            self.subscribers[event_type] = []
        self.subscribers[event_type].append(callback)

    def _emit(self, event_type: str, **kwargs) -> None:
        """Emit an event to all subscribers."""
        for callback in self.subscribers.get(event_type, []):
            try:
                callback(**kwargs)
            except Exception as e:
                logger.error(f"Error in {event_type} callback: {e}")

    def notify(self, message: str) -> None:
        """Surface a non-fatal notice to the user."""
        self.notices.append(message)
        self._emit("notice", message=message)

    def drain_notices(self) -> List[str]:
        notices = list(self.notices)
        self.notices.clear()
        return notices

    # ── Ids ──────────────────────────────────────────────────────────────────

    def resolve_id(self, entity_id: str) -> str:
        """Map a provisional id to its server id once the create has been confirmed."""
        return self._aliases.get(entity_id, entity_id)

    def resolve_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        if isinstance(fields.get("column_id"), str):
            fields = dict(fields, column_id=self.resolve_id(fields["column_id"]))
        return fields

    def is_busy(self, kind: EntityKind, entity_id: str, action: Optional[str] = None) -> bool:
        """True while a mutation (of the given ``action``, if named) is queued or in flight for the entity."""
        mailbox = self._mailboxes.get((kind, self.resolve_id(entity_id)))
        if mailbox is None:
            return False
        return action is None or any(m.action == action for m in mailbox.pending)

    @property
    def resyncing(self) -> bool:
        return self._resync_task is not None and not self._resync_task.done()

    # ── Public mutations ─────────────────────────────────────────────────────

    def update(self, kind: EntityKind, entity_id: str, fields: Dict[str, Any],
               derive: Optional[Callable[[Any], Dict[str, Any]]] = None) -> asyncio.Future:
        """Patch fields. With ``derive``, ``fields`` only names the keys; values are computed at apply time."""
        return self.submit(UpdateMutation(kind, entity_id, fields, derive=derive))

    def create(self, kind: EntityKind, entity) -> asyncio.Future:
        """Insert an entity carrying a provisional id (see ``new_provisional_id``)."""
        return self.submit(CreateMutation(kind, entity))

    def delete(self, kind: EntityKind, entity_id: str) -> asyncio.Future:
        return self.submit(DeleteMutation(kind, entity_id))

    def delete_column(self, column_id: str) -> asyncio.Future:
        """Cascade-delete a column. Raises ValidationError if it is the last one."""
        column_id = self.resolve_id(column_id)
        if column_id not in self.state.columns:
            raise ValidationError("Column not found.")
        if len(self.state.columns) <= 1:
            raise ValidationError("At least one column is required.")
        return self.submit(ColumnDeleteMutation(column_id))

    def move(self, plan: MovePlan) -> asyncio.Future:
        """Persist a drop: the moved lead plus any renumbered siblings."""
        futures = [self.update(EntityKind.LEAD, lead_id, fields) for lead_id, fields in plan.patches()]
        return asyncio.ensure_future(self._all(futures))

    def preview(self, kind: EntityKind, entity_id: str, fields: Dict[str, Any]) -> bool:
        """Local-only change (drag-over membership); never persisted by itself."""
        changed = self.state.apply_patch(kind, self.resolve_id(entity_id), fields)
        if changed:
            self._emit("changed", kind=kind, entity_id=entity_id)
        return changed

    @staticmethod
    async def _all(futures) -> bool:
        results = await asyncio.gather(*futures)
        return all(results)

    # ── Scheduling ───────────────────────────────────────────────────────────

    def submit(self, mutation: Mutation) -> asyncio.Future:
        """
        Queue a mutation on its entity's mailbox.

        If nothing is in flight for the entity (and no resync is running) the
        change is applied right away; otherwise it is applied when its turn comes.
        The returned future resolves to True once the store confirmed it, False
        otherwise. It never raises.
        """
        mutation.entity_id = self.resolve_id(mutation.entity_id)
        key = (mutation.kind, mutation.entity_id)
        mailbox = self._mailboxes.get(key)
        if mailbox is None:
            mailbox = _Mailbox(key)
            self._mailboxes[key] = mailbox
            if not self.resyncing:
                self._apply(mutation)
            mailbox.pending.append(mutation)
            mailbox.task = asyncio.get_running_loop().create_task(self._drain(mailbox))
        else:
            logger.debug(f"{mutation.kind.value} {mutation.entity_id} busy, queueing {mutation.action}")
            mailbox.pending.append(mutation)
        return mutation.future

    def _apply(self, mutation: Mutation) -> None:
        mutation.entity_id = self.resolve_id(mutation.entity_id)
        mutation.fields = self.resolve_fields(mutation.fields)
        mutation.applied = True
        mutation.epoch = self.state.epoch
        if not mutation.apply(self.state):
            mutation.skipped = True
            logger.debug(f"Skipping {mutation!r}: entity not on the board")
            return
        mutation.touches = self.state.touch_snapshot(mutation.kind, mutation.entity_id)
        mutation.transition_to(MutationState.APPLIED)
        self._emit("changed", kind=mutation.kind, entity_id=mutation.entity_id)

    async def _drain(self, mailbox: _Mailbox) -> None:
        try:
            while mailbox.pending:
                mutation = mailbox.pending[0]
                if not mutation.applied:
                    await self._wait_for_resync()
                    self._apply(mutation)
                await self._run(mutation, mailbox)
                mailbox.pending.popleft()
        finally:
            if self._mailboxes.get(mailbox.key) is mailbox:
                del self._mailboxes[mailbox.key]

    async def _run(self, mutation: Mutation, mailbox: _Mailbox) -> None:
        if mutation.skipped or (is_provisional(mutation.entity_id) and not isinstance(mutation, CreateMutation)):
            # Nothing to persist: the entity vanished or its create never went through
            self._finish(mutation, False)
            return

        try:
            result = await mutation.persist(self)
        except Exception as e:
            await self._on_failure(mutation, e)
            return

        if mutation.epoch != self.state.epoch:
            logger.info(f"Dropping stale response for {mutation!r} (epoch {mutation.epoch} < {self.state.epoch})")
            mutation.transition_to(MutationState.CONFIRMED)
            self._finish(mutation, True)
            return

        skip = self.state.touched_since(mutation.kind, mutation.entity_id, mutation.touches)
        for queued in list(mailbox.pending)[1:]:
            skip.update(queued.fields)
        new_id = mutation.confirm(self.state, result, skip)
        if new_id:
            self._rehome(mailbox, mutation.entity_id, new_id)
        mutation.transition_to(MutationState.CONFIRMED)
        logger.debug(f"Confirmed {mutation!r}")
        self._emit("changed", kind=mutation.kind, entity_id=new_id or mutation.entity_id)

        if mutation.needs_resync:
            self.notify("Column deleted but some of its leads remain. Board reloaded.")
            await self.resync()
        self._finish(mutation, True)

    def _rehome(self, mailbox: _Mailbox, provisional_id: str, new_id: str) -> None:
        """Move the mailbox to the server id so later mutations queue behind it."""
        self._aliases[provisional_id] = new_id
        old_key = mailbox.key
        mailbox.key = (old_key[0], new_id)
        if self._mailboxes.get(old_key) is mailbox:
            del self._mailboxes[old_key]
        self._mailboxes[mailbox.key] = mailbox
        for queued in mailbox.pending:
            queued.entity_id = new_id

    async def _on_failure(self, mutation: Mutation, error: Exception) -> None:
        if mutation.epoch != self.state.epoch:
            logger.info(f"Ignoring failure of superseded {mutation!r}: {error}")
            self._finish(mutation, False)
            return

        mutation.transition_to(MutationState.FAILED_RESYNC)
        if mutation.resync_on_failure:
            logger.error(f"{mutation.action} {mutation.kind.value} {mutation.entity_id} failed: {error}; resyncing")
            self.notify(f"Could not save changes ({error}). Board reloaded.")
            await self.resync()
        else:
            logger.warning(f"{mutation.action} {mutation.kind.value} {mutation.entity_id} failed: {error}")
        self._finish(mutation, False)

    def _finish(self, mutation: Mutation, ok: bool) -> None:
        if mutation.state in (MutationState.CONFIRMED, MutationState.FAILED_RESYNC):
            mutation.transition_to(MutationState.IDLE)
        if not mutation.future.done():
            mutation.future.set_result(ok)

    # ── Resync ───────────────────────────────────────────────────────────────

    async def resync(self) -> bool:
        """
        Reload columns, leads and customers and replace the board wholesale.

        Concurrent callers share one reload. Returns False (and keeps the
        current state) if the reload itself fails.
        """
        if not self.resyncing:
            self._resync_task = asyncio.get_running_loop().create_task(self._reload())
        return await asyncio.shield(self._resync_task)

    async def _reload(self) -> bool:
        try:
            columns, leads, customers = await asyncio.gather(
                self.store.columns.list(),
                self.store.leads.list(),
                self.store.customers.list(),
            )
        except Exception as e:
            logger.error(f"Resync failed: {e}")
            self.notify(f"Could not reload the board ({e}).")
            return False
        epoch = self.state.replace_all(columns, leads, customers)
        logger.info(
            f"Board reloaded (epoch {epoch}): {len(columns)} columns, "
            f"{len(leads)} leads, {len(customers)} customers"
        )
        self._emit("resynced", epoch=epoch)
        return True

    async def _wait_for_resync(self) -> None:
        if self.resyncing:
            await asyncio.wait({self._resync_task})

    async def settle(self) -> None:
        """Wait until no mutation is queued or in flight and no resync is running."""
        while self._mailboxes or self.resyncing:
            tasks = {m.task for m in self._mailboxes.values() if m.task is not None}
            if self.resyncing:
                tasks.add(self._resync_task)
            if not tasks:
                await asyncio.sleep(0)
                continue
            await asyncio.wait(tasks)
