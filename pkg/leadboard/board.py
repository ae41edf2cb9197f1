"""
Board: composition root.

Wires drag events to the ordering engine, user intents to the reconciliation
controller, and derives the views the presentation layer renders. All methods
run on the board's event loop; intents are coroutines that apply their change
before the first suspension point and resolve once the store has answered.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from .board_state import BoardState
from .client import EntityStoreClient
from .errors import ValidationError, UnknownEntity, StoreError
from .ordering import DragEvent, DragOrigin, MovePlan, append_order, compute_move, compute_preview
from .reconciler import ReconciliationController, ColumnDeleteMutation, new_provisional_id, is_provisional
from .schema import (
    EntityKind, DocumentKind, UrlMode, Column, Lead, Customer, User, DEFAULT_COLUMNS,
)

logger = logging.getLogger(__name__)

QUICK_LEAD_TITLE = "QUICK LEAD"
QUICK_LEAD_DETAILS = "Click Edit to change details."
NEW_LEAD_TITLE = "NEW LEAD"
NEW_LEAD_DETAILS = "Details..."
UNKNOWN_COLUMN = "Unknown"
REMINDER_TIME_FORMAT = "%Y-%m-%d %H:%M"

CUSTOMER_FIELDS = ("name", "phone", "email", "details", "member_names", "assigned_user_ids")


def parse_reminder_time(text: Optional[str]) -> Optional[int]:
    """``YYYY-MM-DD HH:MM`` (UTC) to epoch milliseconds; blank or unparseable gives None."""
    if not text or not text.strip():
        return None
    try:
        parsed = datetime.strptime(text.strip().replace("T", " "), REMINDER_TIME_FORMAT)
    except ValueError:
        return None
    return int(parsed.replace(tzinfo=timezone.utc).timestamp() * 1000)


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


@dataclass
class ColumnView:
    """One rendered column: the column and its visible leads in order."""
    column: Column
    leads: List[Lead] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {**self.column.to_dict(), "leads": [lead.to_dict() for lead in self.leads]}


@dataclass
class LeadView:
    """A lead listed outside the board (history, reminders) with its column title."""
    lead: Lead
    column_title: str

    def to_dict(self) -> Dict[str, Any]:
        return {**self.lead.to_dict(), "column_title": self.column_title}


class Board:
    """The kanban board of one client session."""

    def __init__(self, store, blobs=None, identity=None, state: Optional[BoardState] = None):
        self.store = store
        self.blobs = blobs
        self.identity = identity
        self.state = state or BoardState()
        self.controller = ReconciliationController(store, self.state)
        self.users: List[User] = []
        self.mounted = False
        self._users_loaded = False
        self._drag_origin: Optional[DragOrigin] = None

    @classmethod
    def from_config(cls, cfg) -> "Board":
        """Wire a board to the configured backend. The sqlite backend has no files or accounts."""
        if cfg.backend == "appwrite":
            from .appwrite import AppwriteHttp, BlobStore, IdentityProvider
            http = AppwriteHttp.from_config(cfg)
            return cls(
                EntityStoreClient.from_config(cfg, http=http),
                blobs=BlobStore(http, cfg.documents_bucket_id),
                identity=IdentityProvider(http),
            )
        return cls(EntityStoreClient.from_config(cfg))

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def mount(self) -> bool:
        """Load the board, create the default columns on an empty board, load users once."""
        ok = await self.controller.resync()
        if ok and not self.state.columns:
            # Not guarded: two clients mounting an empty board at once both create defaults
            logger.info(f"No columns found, creating defaults: {', '.join(DEFAULT_COLUMNS)}")
            await asyncio.gather(*(
                self.controller.create(EntityKind.COLUMN, Column(id=new_provisional_id(), title=title, order=i))
                for i, title in enumerate(DEFAULT_COLUMNS)
            ))
        if not self._users_loaded:
            await self.load_users()
        self.mounted = ok
        return ok

    async def load_users(self) -> List[User]:
        """Fetch the user directory; any failure leaves an empty list."""
        self._users_loaded = True
        if self.identity is None:
            return self.users
        try:
            self.users = await asyncio.to_thread(self.identity.list_users)
        except StoreError as e:
            logger.warning(f"Could not load users: {e}")
            self.users = []
        return self.users

    def drain_notices(self) -> List[str]:
        return self.controller.drain_notices()

    # ── Lookups ──────────────────────────────────────────────────────────────

    def _require(self, kind: EntityKind, entity_id: str):
        entity = self.state.get(kind, self.controller.resolve_id(entity_id))
        if entity is None:
            raise UnknownEntity(f"{kind.value} {entity_id} not found")
        return entity

    def _first_column(self) -> Column:
        columns = self.state.columns_in_order()
        if not columns:
            raise ValidationError("The board has no columns.")
        return columns[0]

    def _column_title(self, column_id: str) -> str:
        column = self.state.columns.get(column_id)
        return column.title if column else UNKNOWN_COLUMN

    # ── Views ────────────────────────────────────────────────────────────────

    def render(self) -> List[ColumnView]:
        """Columns left to right, each with its non-completed leads in order."""
        return [
            ColumnView(column, self.state.leads_in_column(column.id))
            for column in self.state.columns_in_order()
        ]

    def history(self) -> List[LeadView]:
        """Completed leads, most recently updated first."""
        completed = sorted(self.state.completed_leads(), key=lambda lead: lead.updated_at or "", reverse=True)
        return [LeadView(lead, self._column_title(lead.column_id)) for lead in completed]

    def reminders(self) -> List[LeadView]:
        """Leads with reminder text; timed ones first (soonest first), then untimed."""
        with_reminder = [lead for lead in self.state.leads.values() if lead.reminder_text]
        with_reminder.sort(key=lambda lead: (
            lead.reminder_at_millis is None,
            lead.reminder_at_millis or 0,
        ))
        return [LeadView(lead, self._column_title(lead.column_id)) for lead in with_reminder]

    def search_customers(self, query: str) -> List[Customer]:
        """Customers whose name contains ``query`` (case-insensitive). Blank query finds nothing."""
        if _blank(query):
            return []
        needle = query.strip().lower()
        return [c for c in self.state.customers.values() if needle in c.name.lower()]

    # ── Drag and drop ────────────────────────────────────────────────────────

    def drag_start(self, lead_id: str) -> None:
        lead = self.state.leads.get(self.controller.resolve_id(lead_id))
        if lead is None:
            self._drag_origin = None
            return
        self._drag_origin = DragOrigin(lead.id, lead.column_id, lead.order)

    def drag_over(self, event: DragEvent) -> None:
        """Move the dragged lead into the hovered column locally (not persisted)."""
        lead = self.state.leads.get(self.controller.resolve_id(event.active_id))
        if lead is not None and (self._drag_origin is None or self._drag_origin.lead_id != lead.id):
            # no drag_start for this lead: remember where it was before the first preview
            self._drag_origin = DragOrigin(lead.id, lead.column_id, lead.order)
        target = compute_preview(self.state.leads.values(), self.state.columns.keys(), event)
        if target is not None:
            self.controller.preview(EntityKind.LEAD, event.active_id, {"column_id": target})

    async def drag_end(self, event: DragEvent) -> Optional[MovePlan]:
        """
        Drop: compute and persist the move.

        Returns the plan that was persisted, or None when nothing needed saving
        (cancelled drag, lead gone, same-column drop of the last lead). In that
        case any drag-over preview is undone.
        """
        origin = self._drag_origin
        self._drag_origin = None
        if origin is not None and origin.lead_id != self.controller.resolve_id(event.active_id):
            origin = None

        plan = compute_move(self.state.leads.values(), self.state.columns.keys(), event, origin)
        if plan is not None and is_provisional(plan.target_column_id):
            self.controller.notify("That column is still being saved. Try again in a moment.")
            plan = None
        elif plan is not None and self._column_deleting(plan.target_column_id):
            self.controller.notify("That column is being deleted.")
            plan = None
        if plan is None:
            self._revert_preview(origin)
            return None

        logger.debug(f"Moving lead {plan.lead_id} to {plan.target_column_id} at {plan.target_order}")
        await self.controller.move(plan)
        return plan

    def _revert_preview(self, origin: Optional[DragOrigin]) -> None:
        if origin is None:
            return
        lead = self.state.leads.get(origin.lead_id)
        if lead is not None and lead.column_id != origin.column_id:
            self.controller.preview(
                EntityKind.LEAD, origin.lead_id, {"column_id": origin.column_id, "order": origin.order}
            )

    # ── Columns ──────────────────────────────────────────────────────────────

    async def add_column(self, title: str) -> Optional[Column]:
        if _blank(title):
            raise ValidationError("Column title is required.")
        orders = [c.order for c in self.state.columns.values()]
        column = Column(id=new_provisional_id(), title=title.strip(), order=max(orders) + 1 if orders else 0)
        ok = await self.controller.create(EntityKind.COLUMN, column)
        return column if ok else None

    async def rename_column(self, column_id: str, title: str) -> bool:
        if _blank(title):
            raise ValidationError("Column title is required.")
        column = self._require(EntityKind.COLUMN, column_id)
        return await self.controller.update(EntityKind.COLUMN, column.id, {"title": title.strip()})

    async def delete_column(self, column_id: str) -> bool:
        """Delete a column and every lead in it. The last column cannot be deleted."""
        column = self._require(EntityKind.COLUMN, column_id)
        return await self.controller.delete_column(column.id)

    # ── Leads ────────────────────────────────────────────────────────────────

    async def _create_lead(self, column_id: str, title: str, details: str) -> Optional[Lead]:
        lead = Lead(
            id=new_provisional_id(),
            title=title,
            details=details,
            column_id=column_id,
            order=append_order(self.state.leads.values(), column_id),
        )
        ok = await self.controller.create(EntityKind.LEAD, lead)
        return lead if ok else None

    def _column_deleting(self, column_id: str) -> bool:
        return self.controller.is_busy(EntityKind.COLUMN, column_id, ColumnDeleteMutation.action)

    def _lead_column(self, column_id: str) -> Column:
        column = self._require(EntityKind.COLUMN, column_id)
        if is_provisional(column.id):
            raise ValidationError("That column is still being saved.")
        if self._column_deleting(column.id):
            raise ValidationError("That column is being deleted.")
        return column

    async def add_quick_lead(self, column_id: str) -> Optional[Lead]:
        """Placeholder lead at the end of a column."""
        column = self._lead_column(column_id)
        return await self._create_lead(column.id, QUICK_LEAD_TITLE, QUICK_LEAD_DETAILS)

    async def add_lead(self, title: str = "", details: str = "", save_as_customer: bool = False) -> Optional[Lead]:
        """
        Lead in the first column (top-bar form).

        The title is upper-cased; blank values fall back to ``NEW LEAD`` /
        ``Details...``. With ``save_as_customer`` a customer of the same name is
        created too, unless one already exists.
        """
        column = self._lead_column(self._first_column().id)
        title = (title.strip() if title else "") or NEW_LEAD_TITLE
        title = title.upper()
        details = (details.strip() if details else "") or NEW_LEAD_DETAILS

        lead = await self._create_lead(column.id, title, details)
        if lead is not None and save_as_customer:
            if any(c.name == title for c in self.state.customers.values()):
                logger.debug(f"Customer {title} already exists, not saving")
            else:
                await self.controller.create(
                    EntityKind.CUSTOMER, Customer(id=new_provisional_id(), name=title, details=details)
                )
        return lead

    async def add_lead_from_customer(self, customer_id: str) -> Optional[Lead]:
        """Lead in the first column carrying the customer's name and details (or contact line)."""
        customer = self._require(EntityKind.CUSTOMER, customer_id)
        column = self._lead_column(self._first_column().id)
        details = customer.details or customer.contact_line() or NEW_LEAD_DETAILS
        return await self._create_lead(column.id, customer.name, details)

    async def edit_lead(self, lead_id: str, title: Optional[str] = None, details: Optional[str] = None) -> bool:
        """Change title and/or details; blank values keep the current ones."""
        lead = self._require(EntityKind.LEAD, lead_id)
        fields = {}
        if not _blank(title):
            fields["title"] = title.strip()
        if not _blank(details):
            fields["details"] = details.strip()
        if not fields:
            return True
        return await self.controller.update(EntityKind.LEAD, lead.id, fields)

    async def set_note(self, lead_id: str, note: Optional[str]) -> bool:
        """Set the note; blank clears it."""
        lead = self._require(EntityKind.LEAD, lead_id)
        value = None if _blank(note) else note.strip()
        return await self.controller.update(EntityKind.LEAD, lead.id, {"note": value})

    async def set_reminder(self, lead_id: str, text: Optional[str], time_text: Optional[str] = None) -> bool:
        """Set reminder text and optional time (``YYYY-MM-DD HH:MM``); blank text clears both."""
        lead = self._require(EntityKind.LEAD, lead_id)
        if _blank(text):
            fields = {"reminder_text": None, "reminder_at_millis": None}
        else:
            fields = {"reminder_text": text.strip(), "reminder_at_millis": parse_reminder_time(time_text)}
        return await self.controller.update(EntityKind.LEAD, lead.id, fields)

    async def toggle_emergency(self, lead_id: str) -> bool:
        lead = self._require(EntityKind.LEAD, lead_id)
        return await self.controller.update(
            EntityKind.LEAD, lead.id, {"is_emergency": None},
            derive=lambda current: {"is_emergency": not current.is_emergency},
        )

    async def assign_lead(self, lead_id: str, user_id: Optional[str]) -> bool:
        """Assign to a user; blank unassigns."""
        lead = self._require(EntityKind.LEAD, lead_id)
        value = None if _blank(user_id) else user_id.strip()
        return await self.controller.update(EntityKind.LEAD, lead.id, {"assigned_user_id": value})

    async def complete_lead(self, lead_id: str) -> bool:
        """Soft delete: the lead leaves the board and shows up in history."""
        lead = self._require(EntityKind.LEAD, lead_id)
        return await self.controller.update(EntityKind.LEAD, lead.id, {"is_completed": True})

    async def restore_lead(self, lead_id: str) -> bool:
        """Bring a completed lead back at the end of its column (the first column if that is gone)."""
        lead = self._require(EntityKind.LEAD, lead_id)

        def derive(current: Lead) -> Dict[str, Any]:
            column_id = current.column_id
            columns = self.state.columns_in_order()
            if column_id not in self.state.columns and columns:
                column_id = columns[0].id
            others = [other for other in self.state.leads.values() if other.id != current.id]
            return {
                "is_completed": False,
                "column_id": column_id,
                "order": append_order(others, column_id),
            }

        return await self.controller.update(
            EntityKind.LEAD, lead.id, {"is_completed": None, "column_id": None, "order": None}, derive=derive
        )

    async def delete_lead(self, lead_id: str) -> bool:
        """Permanent delete."""
        lead = self._require(EntityKind.LEAD, lead_id)
        return await self.controller.delete(EntityKind.LEAD, lead.id)

    # ── Customers ────────────────────────────────────────────────────────────

    def _customer_fields(self, values: Dict[str, Any]) -> Dict[str, Any]:
        fields = {}
        for name in CUSTOMER_FIELDS:
            if name not in values:
                continue
            value = values[name]
            if name in ("member_names", "assigned_user_ids"):
                value = [str(v).strip() for v in (value or []) if str(v).strip()]
            else:
                value = (value or "").strip()
            fields[name] = value
        if "name" in fields:
            if not fields["name"]:
                raise ValidationError("Customer name is required.")
            fields["name"] = fields["name"].upper()
        return fields

    async def create_customer(self, name: str, **values) -> Optional[Customer]:
        """New customer; the name is upper-cased."""
        fields = self._customer_fields(dict(values, name=name))
        customer = Customer(id=new_provisional_id(), **fields)
        ok = await self.controller.create(EntityKind.CUSTOMER, customer)
        return customer if ok else None

    async def update_customer(self, customer_id: str, **values) -> bool:
        customer = self._require(EntityKind.CUSTOMER, customer_id)
        fields = self._customer_fields(values)
        if not fields:
            return True
        return await self.controller.update(EntityKind.CUSTOMER, customer.id, fields)

    async def delete_customer(self, customer_id: str) -> bool:
        """Delete a customer, then the document files it referenced."""
        customer = self._require(EntityKind.CUSTOMER, customer_id)
        file_ids = [ref for ref in customer.document_refs.values() if ref]
        ok = await self.controller.delete(EntityKind.CUSTOMER, customer.id)
        if ok and self.blobs is not None:
            for file_id in file_ids:
                await self._delete_blob(file_id)
        return ok

    # ── Customer documents ───────────────────────────────────────────────────

    def _require_blobs(self):
        if self.blobs is None:
            raise ValidationError("File storage is not configured.")
        return self.blobs

    async def _delete_blob(self, file_id: str) -> None:
        try:
            await asyncio.to_thread(self.blobs.delete, file_id)
        except StoreError as e:
            logger.warning(f"Could not delete file {file_id}: {e}")

    async def attach_document(
        self, customer_id: str, kind: DocumentKind, data: bytes, mime_type: str, filename: str = "document"
    ) -> bool:
        """
        Upload a file and reference it from the customer.

        The file that was referenced before is deleted once the new reference is
        saved; if saving the reference fails, the new upload is deleted instead.
        """
        blobs = self._require_blobs()
        customer = self._require(EntityKind.CUSTOMER, customer_id)
        try:
            file_id = await asyncio.to_thread(blobs.upload, data, mime_type, filename)
        except StoreError as e:
            logger.error(f"Upload of {kind.value} for customer {customer.id} failed: {e}")
            self.controller.notify(f"Could not upload {kind.value} document ({e}).")
            return False

        replaced = []

        def derive(current: Customer) -> Dict[str, Any]:
            replaced.append(current.document_ref(kind))
            return {"document_refs": dict(current.document_refs, **{kind.value: file_id})}

        ok = await self.controller.update(
            EntityKind.CUSTOMER, customer.id, {"document_refs": None}, derive=derive
        )
        if not ok:
            await self._delete_blob(file_id)
            return False
        for old_id in replaced:
            if old_id and old_id != file_id:
                await self._delete_blob(old_id)
        return True

    async def remove_document(self, customer_id: str, kind: DocumentKind) -> bool:
        """Clear the reference, then delete the file."""
        blobs = self._require_blobs()
        customer = self._require(EntityKind.CUSTOMER, customer_id)
        removed = []

        def derive(current: Customer) -> Dict[str, Any]:
            removed.append(current.document_ref(kind))
            return {"document_refs": dict(current.document_refs, **{kind.value: None})}

        ok = await self.controller.update(
            EntityKind.CUSTOMER, customer.id, {"document_refs": None}, derive=derive
        )
        if ok:
            for file_id in removed:
                if file_id:
                    await self._delete_blob(file_id)
        return ok

    def document_url(self, customer_id: str, kind: DocumentKind, mode: UrlMode = UrlMode.PREVIEW) -> Optional[str]:
        """Preview or download URL of a customer document, None if there is none."""
        blobs = self._require_blobs()
        customer = self._require(EntityKind.CUSTOMER, customer_id)
        file_id = customer.document_ref(kind)
        return blobs.url_for(file_id, mode) if file_id else None
