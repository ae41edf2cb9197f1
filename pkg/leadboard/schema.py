"""
Board entities and their store encoding.

Entities:
  Column   - ordered lane on the board
  Lead     - trackable record placed in exactly one column
  Customer - directory entry, linked to leads only informally
  User     - read-only projection from the identity provider

Python field names are used everywhere in the core. The backend's attribute
names (``status``, ``assigned_to``, JSON-encoded lists, ...) only appear in
``to_wire`` / ``from_wire``.
"""
from enum import Enum
from dataclasses import dataclass, field, fields, replace
from typing import Optional, List, Dict, Any, ClassVar
import json


class EntityKind(Enum):
    """Remote collections managed by the board."""
    COLUMN = "column"
    LEAD = "lead"
    CUSTOMER = "customer"


class DocumentKind(Enum):
    """Identity documents a customer may have on file."""
    PASSPORT = "passport"
    AADHAAR = "aadhaar"
    PAN = "pan"

    @classmethod
    def from_str(cls, value: str) -> "DocumentKind":
        try:
            return cls[value.upper()]
        except KeyError:
            raise ValueError(f"Unknown document kind: {value}")


class UrlMode(Enum):
    """How a stored file is served."""
    PREVIEW = "preview"
    DOWNLOAD = "download"


# Server-computed fields, never sent back on create/update
READ_ONLY_FIELDS = ("id", "created_at", "updated_at")

DEFAULT_COLUMNS = ("Lead", "Follow Up", "To Do", "Payment Collection")


def _json_list(value: Any) -> List[str]:
    """Decode a list stored as a JSON string (tolerates real lists and junk)."""
    if isinstance(value, list):
        return [str(v) for v in value]
    if not value:
        return []
    try:
        decoded = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return []
    return [str(v) for v in decoded] if isinstance(decoded, list) else []


def _meta(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": doc.get("$id", ""),
        "created_at": doc.get("$createdAt"),
        "updated_at": doc.get("$updatedAt"),
    }


class _Entity:
    """Shared helpers for the board entity dataclasses."""

    # python name -> backend attribute name, for fields that differ
    WIRE_NAMES: ClassVar[Dict[str, str]] = {}

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def to_wire(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        """Encode a (partial) field mapping into backend attributes."""
        wire = {}
        for name, value in values.items():
            if name in READ_ONLY_FIELDS:
                continue
            wire[cls.WIRE_NAMES.get(name, name)] = value
        return wire

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def copy(self, **changes):
        return replace(self, **changes)


@dataclass
class Column(_Entity):
    """A named lane. ``order`` defines left-to-right position."""
    id: str
    title: str
    order: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_wire(cls, doc: Dict[str, Any]) -> "Column":
        return cls(
            title=doc.get("title", ""),
            order=int(doc.get("order") or 0),
            **_meta(doc),
        )


@dataclass
class Lead(_Entity):
    """A lead card. ``is_completed`` is a soft delete (kept for history)."""
    id: str
    title: str
    details: str = ""
    column_id: str = ""
    order: int = 0
    assigned_user_id: Optional[str] = None
    is_emergency: bool = False
    is_completed: bool = False
    note: Optional[str] = None
    reminder_text: Optional[str] = None
    reminder_at_millis: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    WIRE_NAMES: ClassVar[Dict[str, str]] = {
        "column_id": "status",
        "assigned_user_id": "assigned_to",
        "reminder_text": "reminder",
        "reminder_at_millis": "reminder_time",
    }

    @classmethod
    def from_wire(cls, doc: Dict[str, Any]) -> "Lead":
        reminder_time = doc.get("reminder_time")
        return cls(
            title=doc.get("title", ""),
            details=doc.get("details") or "",
            column_id=doc.get("status") or "",
            order=int(doc.get("order") or 0),
            assigned_user_id=doc.get("assigned_to") or None,
            is_emergency=bool(doc.get("is_emergency", False)),
            is_completed=bool(doc.get("is_completed", False)),
            note=doc.get("note"),
            reminder_text=doc.get("reminder"),
            reminder_at_millis=int(reminder_time) if reminder_time is not None else None,
            **_meta(doc),
        )


@dataclass
class Customer(_Entity):
    """A customer directory entry with optional identity documents."""
    id: str
    name: str
    phone: str = ""
    email: str = ""
    details: str = ""
    member_names: List[str] = field(default_factory=list)
    # DocumentKind.value -> file id in the blob store
    document_refs: Dict[str, Optional[str]] = field(default_factory=dict)
    assigned_user_ids: List[str] = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def document_ref(self, kind: DocumentKind) -> Optional[str]:
        return self.document_refs.get(kind.value)

    @classmethod
    def to_wire(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        wire = {}
        for name, value in values.items():
            if name in READ_ONLY_FIELDS:
                continue
            if name == "member_names":
                wire["members"] = json.dumps(list(value or []))
            elif name == "assigned_user_ids":
                wire["assigned_users"] = json.dumps(list(value or []))
            elif name == "document_refs":
                refs = value or {}
                for kind in DocumentKind:
                    wire[f"{kind.value}_file_id"] = refs.get(kind.value)
            else:
                wire[name] = value
        return wire

    @classmethod
    def from_wire(cls, doc: Dict[str, Any]) -> "Customer":
        return cls(
            name=doc.get("name", ""),
            phone=doc.get("phone") or "",
            email=doc.get("email") or "",
            details=doc.get("details") or "",
            member_names=_json_list(doc.get("members")),
            document_refs={
                kind.value: doc.get(f"{kind.value}_file_id") for kind in DocumentKind
            },
            assigned_user_ids=_json_list(doc.get("assigned_users")),
            **_meta(doc),
        )

    def contact_line(self) -> str:
        """``Phone: x | Email: y`` summary used when a lead is created from a customer."""
        parts = []
        if self.phone:
            parts.append(f"Phone: {self.phone}")
        if self.email:
            parts.append(f"Email: {self.email}")
        return " | ".join(parts)


@dataclass
class User:
    """Identity provider account (never mutated here)."""
    id: str
    name: str = ""
    email: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "email": self.email}

    @classmethod
    def from_wire(cls, doc: Dict[str, Any]) -> "User":
        return cls(id=doc.get("$id", ""), name=doc.get("name", ""), email=doc.get("email", ""))


ENTITY_TYPES = {
    EntityKind.COLUMN: Column,
    EntityKind.LEAD: Lead,
    EntityKind.CUSTOMER: Customer,
}
