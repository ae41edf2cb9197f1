"""
Tests for the Board composition root.

Covers:
- Mount: default column bootstrap, user loading
- Drag and drop wiring (preview, drop, cancel)
- Lead intents: quick / top-bar / from-customer creation, edits, notes,
  reminders, emergency, assignment, complete / restore / delete
- Derived views: render, history, reminders, customer search
- Customer intents and document attach / remove
"""
import asyncio
from unittest.mock import MagicMock

import pytest

from pkg.leadboard.board import Board, parse_reminder_time, QUICK_LEAD_TITLE, QUICK_LEAD_DETAILS
from pkg.leadboard.errors import ValidationError, UnknownEntity, StoreUnavailable
from pkg.leadboard.ordering import DragEvent
from pkg.leadboard.schema import DocumentKind, UrlMode, User, DEFAULT_COLUMNS

from conftest import spin


def run(coro):
    return asyncio.run(coro)


async def mounted(store, **kwargs):
    board = Board(store, **kwargs)
    assert await board.mount()
    return board


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Mount
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_mount_creates_default_columns(store):
    async def scenario():
        board = await mounted(store)
        assert [c.title for c in board.state.columns_in_order()] == list(DEFAULT_COLUMNS)
        assert [c.order for c in board.state.columns_in_order()] == [0, 1, 2, 3]
        assert len(store.columns.docs) == 4
        assert not any(c.id.startswith("local-") for c in board.state.columns.values())

    run(scenario())


def test_mount_keeps_existing_columns(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        assert [c.id for c in board.state.columns_in_order()] == ["A", "B"]
        assert seeded_store.columns.calls_for("create") == []

    run(scenario())


def test_mount_loads_users_once(seeded_store):
    identity = MagicMock()
    identity.list_users.return_value = [User(id="u1", name="Ann")]

    async def scenario():
        board = await mounted(seeded_store, identity=identity)
        await board.mount()
        assert [u.id for u in board.users] == ["u1"]
        assert identity.list_users.call_count == 1

    run(scenario())


def test_user_load_failure_leaves_empty_list(seeded_store):
    identity = MagicMock()
    identity.list_users.side_effect = StoreUnavailable("no key")

    async def scenario():
        board = await mounted(seeded_store, identity=identity)
        assert board.users == []

    run(scenario())


def test_mount_fails_when_store_is_down(store):
    store.columns.fail("list")

    async def scenario():
        board = Board(store)
        assert await board.mount() is False
        assert store.columns.calls_for("create") == []

    run(scenario())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Drag and drop
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_drag_across_columns(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        board.drag_start("a1")
        board.drag_over(DragEvent("a1", "b2"))
        assert board.state.leads["a1"].column_id == "B"
        assert seeded_store.leads.calls_for("update") == []

        plan = await board.drag_end(DragEvent("a1", "b2"))
        assert plan.target_column_id == "B"
        assert plan.target_order == 3
        rendered = {view.column.id: [l.id for l in view.leads] for view in board.render()}
        assert rendered["B"] == ["b1", "b2", "b3", "a1"]
        assert seeded_store.leads.entity("a1").column_id == "B"
        assert seeded_store.leads.entity("a1").order == 3

    run(scenario())


def test_cancelled_drag_reverts_preview(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        board.drag_start("a2")
        board.drag_over(DragEvent("a2", "B"))
        assert await board.drag_end(DragEvent("a2", None)) is None
        assert board.state.leads["a2"].column_id == "A"
        assert board.state.leads["a2"].order == 1
        assert seeded_store.leads.calls_for("update") == []

    run(scenario())


def test_drop_back_when_last_is_not_persisted(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        board.drag_start("a2")
        board.drag_over(DragEvent("a2", "B"))
        assert await board.drag_end(DragEvent("a2", "A")) is None
        assert board.state.leads["a2"].column_id == "A"
        assert seeded_store.leads.calls_for("update") == []

    run(scenario())


def test_drag_without_start_persists_the_move(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        board.drag_over(DragEvent("b3", "A"))
        assert board.state.leads["b3"].column_id == "A"
        plan = await board.drag_end(DragEvent("b3", "A"))
        assert plan is not None
        assert plan.target_column_id == "A"
        assert seeded_store.leads.entity("b3").column_id == "A"
        assert board.state.leads["b3"].column_id == "A"

    run(scenario())


def test_cancelled_drag_without_start_reverts_preview(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        order = board.state.leads["b3"].order
        board.drag_over(DragEvent("b3", "A"))
        board.drag_over(DragEvent("b3", "a1"))
        assert await board.drag_end(DragEvent("b3", None)) is None
        assert board.state.leads["b3"].column_id == "B"
        assert board.state.leads["b3"].order == order
        assert seeded_store.leads.calls_for("update") == []

    run(scenario())


def test_drop_into_column_being_deleted_is_refused(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        gate = seeded_store.leads.hold("delete")
        deleting = asyncio.ensure_future(board.delete_column("A"))
        await spin()
        board.drag_start("b1")
        board.drag_over(DragEvent("b1", "A"))
        assert await board.drag_end(DragEvent("b1", "A")) is None
        assert board.state.leads["b1"].column_id == "B"
        assert board.drain_notices()
        gate.set()
        assert await deleting
        assert seeded_store.leads.entity("b1").column_id == "B"
        assert board.state.orphaned_leads() == []

    run(scenario())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Columns
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_add_rename_delete_column(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        column = await board.add_column("  Won ")
        assert column.title == "Won"
        assert column.order == 2
        assert column.id in seeded_store.columns.docs

        assert await board.rename_column(column.id, "Closed Won")
        assert seeded_store.columns.entity(column.id).title == "Closed Won"

        assert await board.delete_column(column.id)
        assert column.id not in board.state.columns

    run(scenario())


def test_column_validation(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        with pytest.raises(ValidationError):
            await board.add_column("   ")
        with pytest.raises(UnknownEntity):
            await board.rename_column("nope", "X")
        assert await board.delete_column("B")
        with pytest.raises(ValidationError):
            await board.delete_column("A")

    run(scenario())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Leads
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_no_leads_into_column_being_deleted(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        gate = seeded_store.leads.hold("delete")
        deleting = asyncio.ensure_future(board.delete_column("A"))
        await spin()
        with pytest.raises(ValidationError):
            await board.add_quick_lead("A")
        with pytest.raises(ValidationError):
            await board.add_lead("acme")
        gate.set()
        assert await deleting
        assert seeded_store.leads.calls_for("create") == []
        assert board.state.orphaned_leads() == []
        assert board.drain_notices() == []

    run(scenario())


def test_quick_lead_is_appended_to_column(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        lead = await board.add_quick_lead("B")
        assert lead.title == QUICK_LEAD_TITLE
        assert lead.details == QUICK_LEAD_DETAILS
        assert lead.order == 3
        assert [l.id for l in board.state.leads_in_column("B")][-1] == lead.id
        assert not lead.id.startswith("local-")

    run(scenario())


def test_quick_lead_is_visible_before_the_store_answers(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        gate = seeded_store.leads.hold("create")
        task = asyncio.ensure_future(board.add_quick_lead("A"))
        await spin()
        titles = [l.title for l in board.state.leads_in_column("A")]
        assert titles[-1] == QUICK_LEAD_TITLE
        gate.set()
        assert await task is not None

    run(scenario())


def test_add_lead_uppercases_and_saves_customer_once(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        lead = await board.add_lead("globex corp", "", save_as_customer=True)
        assert lead.title == "GLOBEX CORP"
        assert lead.details == "Details..."
        assert lead.column_id == "A"
        await board.controller.settle()
        assert [c.name for c in board.state.customers.values()].count("GLOBEX CORP") == 1

        await board.add_lead("acme", "again", save_as_customer=True)
        await board.controller.settle()
        assert [c.name for c in board.state.customers.values()].count("ACME") == 1

        default = await board.add_lead()
        assert default.title == "NEW LEAD"

    run(scenario())


def test_add_lead_from_customer_uses_contact_line(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        lead = await board.add_lead_from_customer("c1")
        assert lead.title == "ACME"
        assert lead.details == "Phone: 555-0100 | Email: ops@acme.test"

    run(scenario())


def test_edit_lead_keeps_blank_fields(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        assert await board.edit_lead("a1", "", "New details")
        lead = board.state.leads["a1"]
        assert lead.title == "FIRST"
        assert lead.details == "New details"
        assert seeded_store.leads.calls_for("update")[-1][2] == {"details": "New details"}

    run(scenario())


def test_note_and_reminder(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        assert await board.set_note("a1", " call at noon ")
        assert board.state.leads["a1"].note == "call at noon"
        assert await board.set_note("a1", "  ")
        assert board.state.leads["a1"].note is None

        assert await board.set_reminder("a1", "Follow up", "2024-03-01 09:30")
        lead = board.state.leads["a1"]
        assert lead.reminder_text == "Follow up"
        assert lead.reminder_at_millis == parse_reminder_time("2024-03-01 09:30")
        assert seeded_store.leads.docs["a1"]["reminder_time"] == lead.reminder_at_millis

        assert await board.set_reminder("a1", "")
        assert board.state.leads["a1"].reminder_text is None
        assert board.state.leads["a1"].reminder_at_millis is None

    run(scenario())


def test_parse_reminder_time():
    assert parse_reminder_time("1970-01-01 00:01") == 60_000
    assert parse_reminder_time("1970-01-01T00:01") == 60_000
    assert parse_reminder_time("") is None
    assert parse_reminder_time("tomorrow") is None


def test_toggle_emergency_and_assign(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        await asyncio.gather(board.toggle_emergency("a1"), board.toggle_emergency("a1"))
        # each toggle reads the value left by the one before it
        assert board.state.leads["a1"].is_emergency is False
        assert [c[2]["is_emergency"] for c in seeded_store.leads.calls_for("update")] == [True, False]

        assert await board.assign_lead("a1", "u1")
        assert seeded_store.leads.docs["a1"]["assigned_to"] == "u1"
        assert await board.assign_lead("a1", "")
        assert board.state.leads["a1"].assigned_user_id is None

    run(scenario())


def test_complete_and_restore(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        assert await board.complete_lead("a1")
        assert "a1" not in [l.id for l in board.state.leads_in_column("A")]
        assert "a1" in [v.lead.id for v in board.history()]

        assert await board.restore_lead("a1")
        restored = board.state.leads["a1"]
        assert restored.is_completed is False
        # appended after every other lead of A, completed ones included
        assert restored.order == 3
        assert [l.id for l in board.state.leads_in_column("A")] == ["a2", "a1"]

    run(scenario())


def test_restore_into_deleted_column_goes_to_first_column(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        board.state.leads["done"].column_id = "gone"
        assert await board.restore_lead("done")
        assert board.state.leads["done"].column_id == "A"

    run(scenario())


def test_delete_lead(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        assert await board.delete_lead("b1")
        assert "b1" not in board.state.leads
        assert "b1" not in seeded_store.leads.docs
        with pytest.raises(UnknownEntity):
            await board.delete_lead("b1")

    run(scenario())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Views
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_render_excludes_completed(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        views = board.render()
        assert [v.column.id for v in views] == ["A", "B"]
        assert [l.id for l in views[0].leads] == ["a1", "a2"]
        assert views[0].to_dict()["leads"][0]["id"] == "a1"

    run(scenario())


def test_history_most_recent_first(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        await board.complete_lead("b1")
        history = board.history()
        assert [v.lead.id for v in history] == ["b1", "done"]
        assert history[0].column_title == "Follow Up"

    run(scenario())


def test_reminders_timed_first(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        await board.set_reminder("b1", "later", "2030-01-02 10:00")
        await board.set_reminder("a1", "untimed")
        await board.set_reminder("a2", "sooner", "2030-01-01 10:00")
        board.state.leads["b1"].column_id = "gone"
        views = board.reminders()
        assert [v.lead.id for v in views] == ["a2", "b1", "a1"]
        assert views[1].column_title == "Unknown"
        assert views[0].to_dict()["column_title"] == "Lead"

    run(scenario())


def test_search_customers(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        assert [c.id for c in board.search_customers("cm")] == ["c1"]
        assert board.search_customers("ACME")[0].name == "ACME"
        assert board.search_customers("") == []
        assert board.search_customers("zzz") == []

    run(scenario())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Customers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_customer_crud(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        customer = await board.create_customer(" initech ", phone="1", member_names=["Ann", " "])
        assert customer.name == "INITECH"
        assert customer.member_names == ["Ann"]
        assert seeded_store.customers.docs[customer.id]["members"] == '["Ann"]'

        assert await board.update_customer(customer.id, email="hi@initech.test", assigned_user_ids=["u1"])
        assert seeded_store.customers.entity(customer.id).assigned_user_ids == ["u1"]
        with pytest.raises(ValidationError):
            await board.update_customer(customer.id, name="  ")

        assert await board.delete_customer(customer.id)
        assert customer.id not in board.state.customers

    run(scenario())


def blob_store():
    blobs = MagicMock()
    blobs.upload.side_effect = ["file-1", "file-2"]
    blobs.url_for.side_effect = lambda file_id, mode: f"https://files.test/{file_id}/{mode.value}"
    return blobs


def test_attach_document_replaces_old_file(seeded_store):
    blobs = blob_store()

    async def scenario():
        board = await mounted(seeded_store, blobs=blobs)
        assert await board.attach_document("c1", DocumentKind.PASSPORT, b"one", "image/png", "p.png")
        assert board.state.customers["c1"].document_ref(DocumentKind.PASSPORT) == "file-1"
        assert seeded_store.customers.docs["c1"]["passport_file_id"] == "file-1"
        blobs.delete.assert_not_called()

        assert await board.attach_document("c1", DocumentKind.PASSPORT, b"two", "image/png", "p.png")
        assert seeded_store.customers.docs["c1"]["passport_file_id"] == "file-2"
        blobs.delete.assert_called_once_with("file-1")
        assert board.document_url("c1", DocumentKind.PASSPORT, UrlMode.DOWNLOAD) == "https://files.test/file-2/download"
        assert board.document_url("c1", DocumentKind.PAN) is None

    run(scenario())


def test_attach_document_cleans_up_when_reference_fails(seeded_store):
    blobs = blob_store()
    seeded_store.customers.fail("update", "c1")

    async def scenario():
        board = await mounted(seeded_store, blobs=blobs)
        assert await board.attach_document("c1", DocumentKind.PAN, b"x", "application/pdf") is False
        blobs.delete.assert_called_once_with("file-1")
        assert board.state.customers["c1"].document_ref(DocumentKind.PAN) is None

    run(scenario())


def test_upload_failure_is_reported(seeded_store):
    blobs = MagicMock()
    blobs.upload.side_effect = StoreUnavailable("bucket full")

    async def scenario():
        board = await mounted(seeded_store, blobs=blobs)
        assert await board.attach_document("c1", DocumentKind.PAN, b"x", "application/pdf") is False
        assert seeded_store.customers.calls_for("update") == []
        assert any("upload" in n for n in board.drain_notices())

    run(scenario())


def test_remove_document_and_delete_customer(seeded_store):
    blobs = blob_store()

    async def scenario():
        board = await mounted(seeded_store, blobs=blobs)
        await board.attach_document("c1", DocumentKind.AADHAAR, b"a", "image/jpeg")
        await board.attach_document("c1", DocumentKind.PAN, b"p", "application/pdf")

        assert await board.remove_document("c1", DocumentKind.AADHAAR)
        blobs.delete.assert_called_once_with("file-1")
        assert seeded_store.customers.docs["c1"]["aadhaar_file_id"] is None

        assert await board.delete_customer("c1")
        blobs.delete.assert_called_with("file-2")

    run(scenario())


def test_documents_need_blob_store(seeded_store):
    async def scenario():
        board = await mounted(seeded_store)
        with pytest.raises(ValidationError):
            await board.attach_document("c1", DocumentKind.PAN, b"x", "application/pdf")

    run(scenario())
