"""
Tests for board entities and their store encoding.

Covers:
- Lead field names mapped to backend attribute names
- Customer JSON-string lists and document refs
- Read-only server fields never sent on writes
- DocumentKind parsing
"""
import json

import pytest

from pkg.leadboard.schema import (
    Column, Lead, Customer, User, DocumentKind, EntityKind, ENTITY_TYPES, READ_ONLY_FIELDS,
)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Lead / Column
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_lead_to_wire_renames_fields():
    """Python names become backend attribute names"""
    wire = Lead.to_wire({
        "column_id": "col-1",
        "assigned_user_id": "u1",
        "reminder_text": "Call back",
        "reminder_at_millis": 1700000000000,
        "is_emergency": True,
    })
    assert wire == {
        "status": "col-1",
        "assigned_to": "u1",
        "reminder": "Call back",
        "reminder_time": 1700000000000,
        "is_emergency": True,
    }


def test_to_wire_skips_read_only_fields():
    """id and server timestamps are never written"""
    lead = Lead(id="x", title="T", created_at="then", updated_at="now")
    wire = Lead.to_wire(lead.to_dict())
    for name in READ_ONLY_FIELDS:
        assert name not in wire
    assert "$id" not in wire


def test_lead_from_wire():
    """Backend document decodes into a typed Lead"""
    lead = Lead.from_wire({
        "$id": "l1",
        "$createdAt": "2024-01-01T00:00:00.000+00:00",
        "$updatedAt": "2024-01-02T00:00:00.000+00:00",
        "title": "ACME",
        "status": "col-1",
        "order": 3,
        "assigned_to": "",
        "is_emergency": True,
        "reminder": "Follow up",
        "reminder_time": "1700000000000",
    })
    assert lead.id == "l1"
    assert lead.column_id == "col-1"
    assert lead.order == 3
    assert lead.assigned_user_id is None
    assert lead.is_emergency is True
    assert lead.is_completed is False
    assert lead.reminder_at_millis == 1700000000000
    assert lead.details == ""
    assert lead.updated_at.startswith("2024-01-02")


def test_column_from_wire_defaults_order():
    column = Column.from_wire({"$id": "c1", "title": "Lead"})
    assert column.order == 0
    assert column.title == "Lead"


def test_copy_does_not_alias():
    lead = Lead(id="l1", title="A", column_id="x", order=1)
    moved = lead.copy(column_id="y")
    assert moved.column_id == "y"
    assert lead.column_id == "x"


def test_entity_types_cover_all_kinds():
    assert set(ENTITY_TYPES) == set(EntityKind)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Customer
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_customer_lists_are_json_strings_on_the_wire():
    wire = Customer.to_wire({
        "name": "ACME",
        "member_names": ["Ann", "Bob"],
        "assigned_user_ids": ["u1"],
    })
    assert json.loads(wire["members"]) == ["Ann", "Bob"]
    assert json.loads(wire["assigned_users"]) == ["u1"]


def test_customer_document_refs_map_to_file_id_attributes():
    wire = Customer.to_wire({"document_refs": {"passport": "f1", "pan": None}})
    assert wire == {"passport_file_id": "f1", "aadhaar_file_id": None, "pan_file_id": None}


def test_customer_from_wire_decodes_lists():
    customer = Customer.from_wire({
        "$id": "c1",
        "name": "ACME",
        "members": '["Ann", "Bob"]',
        "assigned_users": '["u1", "u2"]',
        "aadhaar_file_id": "f2",
    })
    assert customer.member_names == ["Ann", "Bob"]
    assert customer.assigned_user_ids == ["u1", "u2"]
    assert customer.document_ref(DocumentKind.AADHAAR) == "f2"
    assert customer.document_ref(DocumentKind.PASSPORT) is None


def test_customer_from_wire_tolerates_bad_lists():
    """Malformed or missing JSON lists decode to empty lists"""
    customer = Customer.from_wire({"$id": "c1", "name": "X", "members": "not json", "assigned_users": '{"a": 1}'})
    assert customer.member_names == []
    assert customer.assigned_user_ids == []


def test_contact_line():
    assert Customer(id="c", name="X", phone="1", email="a@b").contact_line() == "Phone: 1 | Email: a@b"
    assert Customer(id="c", name="X", email="a@b").contact_line() == "Email: a@b"
    assert Customer(id="c", name="X").contact_line() == ""


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Enums / User
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_document_kind_from_str():
    assert DocumentKind.from_str("passport") is DocumentKind.PASSPORT
    assert DocumentKind.from_str("PAN") is DocumentKind.PAN
    with pytest.raises(ValueError):
        DocumentKind.from_str("licence")


def test_user_from_wire():
    user = User.from_wire({"$id": "u1", "name": "Ann", "email": "ann@example.test", "status": True})
    assert user.to_dict() == {"id": "u1", "name": "Ann", "email": "ann@example.test"}
