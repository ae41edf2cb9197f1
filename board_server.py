#!/usr/bin/env python3
"""
Leadboard Server
----------------
JSON API over one Board. The board lives on a background event loop
(BoardRuntime); request handlers hand calls to it and wait for the outcome.

Usage:
    python board_server.py --config leadboard.yaml
    LEADBOARD_BACKEND=sqlite python board_server.py --port 3000

API (read):
    GET  /health
    GET  /api/board                 → { columns: [{..column, leads: [...]}], epoch, resyncing, orphaned }
    GET  /api/history               → { leads }   completed, most recently updated first
    GET  /api/reminders             → { leads }   timed first, soonest first
    GET  /api/customers?q=NAME      → { customers }
    GET  /api/users                 → { users }
    GET  /api/notices               → { notices } (drained)
    GET  /api/customers/<id>/documents/<kind>?mode=preview|download → { url }

API (X-API-Key required):
    POST   /api/resync
    POST   /api/drag/start  { lead_id }
    POST   /api/drag/over   { active_id, over_id }
    POST   /api/drag/end    { active_id, over_id }
    POST   /api/columns     { title }            PATCH/DELETE /api/columns/<id>
    POST   /api/leads       { title, details, save_as_customer }
    POST   /api/leads/quick { column_id }
    POST   /api/leads/from-customer { customer_id }
    PATCH  /api/leads/<id>  { title, details }   DELETE /api/leads/<id>
    PUT    /api/leads/<id>/note      { note }
    PUT    /api/leads/<id>/reminder  { text, time }   time: "YYYY-MM-DD HH:MM"
    PUT    /api/leads/<id>/assignee  { user_id }
    POST   /api/leads/<id>/emergency | /complete | /restore
    POST   /api/customers   { name, phone, email, details, member_names, assigned_user_ids }
    PATCH/DELETE /api/customers/<id>
    POST   /api/customers/<id>/documents/<kind>   multipart "file"
    DELETE /api/customers/<id>/documents/<kind>
    POST   /api/auth/login | /signup   → { session: {.., secret} }
    POST   /api/auth/logout, GET /api/auth/me   with X-Appwrite-Session: <secret>
"""

import argparse
import concurrent.futures
import hmac
import logging
import os
import sys
from functools import wraps
from typing import Optional

from flask import Flask, jsonify, request

from pkg.leadboard.appwrite import SESSION_HEADER
from pkg.leadboard.board import Board
from pkg.leadboard.config import Config
from pkg.leadboard.errors import ValidationError, UnknownEntity, StoreError
from pkg.leadboard.ordering import DragEvent
from pkg.leadboard.runtime import BoardRuntime
from pkg.leadboard.schema import DocumentKind, UrlMode

logger = logging.getLogger("leadboard.server")

app = Flask(__name__)

runtime: Optional[BoardRuntime] = None


def configure(board_runtime: BoardRuntime) -> Flask:
    """Attach the running board; returns the app."""
    global runtime
    runtime = board_runtime
    return app


# ── Auth ─────────────────────────────────────────────────────────────────────

API_SECRET = os.environ.get("LEADBOARD_API_SECRET", "")


def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not API_SECRET:
            return jsonify({"error": "API_SECRET not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, API_SECRET):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


# ── Helpers ──────────────────────────────────────────────────────────────────

class BoardNotReady(Exception):
    pass


def board() -> Board:
    if runtime is None or not runtime.running:
        raise BoardNotReady()
    return runtime.board


def call(fn, *args, **kwargs):
    """Run a board method on the board loop."""
    board()
    return runtime.call(fn, *args, **kwargs)


def body() -> dict:
    return request.get_json(force=True, silent=True) or {}


def document_kind(kind: str) -> DocumentKind:
    try:
        return DocumentKind.from_str(kind)
    except ValueError as e:
        raise ValidationError(str(e))


def outcome(ok: bool, **extra):
    """Mutation response; failures were already resynced and reported as notices."""
    payload = {"ok": bool(ok), **extra}
    if not ok:
        payload["notices"] = call(board().drain_notices)
    return jsonify(payload), 200 if ok else 502


@app.errorhandler(ValidationError)
def handle_validation(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(UnknownEntity)
def handle_unknown(e):
    return jsonify({"error": str(e)}), 404


@app.errorhandler(StoreError)
def handle_store(e):
    logger.warning(f"Backend call failed: {e}")
    return jsonify({"error": str(e)}), 502


@app.errorhandler(BoardNotReady)
def handle_not_ready(e):
    return jsonify({"error": "Board not running"}), 503


@app.errorhandler(concurrent.futures.TimeoutError)
def handle_timeout(e):
    # The call keeps running on the board loop; its outcome shows up in /api/board and /api/notices
    logger.warning("Board call timed out")
    return jsonify({"error": "Board is busy, the change is still pending"}), 504


# ── Read routes ──────────────────────────────────────────────────────────────

@app.route("/health")
def health():
    ready = runtime is not None and runtime.running
    return jsonify({"status": "ok" if ready else "starting", "mounted": ready and runtime.board.mounted})


@app.route("/api/board")
def api_board():
    b = board()

    def snapshot():
        return {
            "columns": [view.to_dict() for view in b.render()],
            "epoch": b.state.epoch,
            "resyncing": b.controller.resyncing,
            "orphaned": len(b.state.orphaned_leads()),
        }

    return jsonify(call(snapshot))


@app.route("/api/history")
def api_history():
    views = call(board().history)
    return jsonify({"leads": [v.to_dict() for v in views], "count": len(views)})


@app.route("/api/reminders")
def api_reminders():
    views = call(board().reminders)
    return jsonify({"leads": [v.to_dict() for v in views], "count": len(views)})


@app.route("/api/customers", methods=["GET"])
def api_customers():
    b = board()
    query = request.args.get("q", "")
    if query:
        customers = call(b.search_customers, query)
    else:
        customers = call(lambda: sorted(b.state.customers.values(), key=lambda c: c.name))
    return jsonify({"customers": [c.to_dict() for c in customers], "count": len(customers)})


@app.route("/api/users")
def api_users():
    return jsonify({"users": [u.to_dict() for u in board().users]})


@app.route("/api/notices")
def api_notices():
    return jsonify({"notices": call(board().drain_notices)})


@app.route("/api/customers/<customer_id>/documents/<kind>", methods=["GET"])
def api_document_url(customer_id, kind):
    mode = request.args.get("mode", UrlMode.PREVIEW.value)
    try:
        url_mode = UrlMode(mode)
    except ValueError:
        return jsonify({"error": "mode must be 'preview' or 'download'"}), 400
    url = call(board().document_url, customer_id, document_kind(kind), url_mode)
    if url is None:
        return jsonify({"error": "No document on file"}), 404
    return jsonify({"url": url})


# ── Board routes ─────────────────────────────────────────────────────────────

@app.route("/api/resync", methods=["POST"])
@require_api_key
def api_resync():
    return outcome(call(board().controller.resync), epoch=board().state.epoch)


@app.route("/api/drag/start", methods=["POST"])
@require_api_key
def api_drag_start():
    lead_id = body().get("lead_id", "")
    if not lead_id:
        return jsonify({"error": "lead_id is required"}), 400
    call(board().drag_start, lead_id)
    return jsonify({"ok": True})


def _drag_event() -> DragEvent:
    data = body()
    if not data.get("active_id"):
        raise ValidationError("active_id is required")
    return DragEvent(active_id=data["active_id"], over_id=data.get("over_id") or None)


@app.route("/api/drag/over", methods=["POST"])
@require_api_key
def api_drag_over():
    call(board().drag_over, _drag_event())
    return jsonify({"ok": True})


@app.route("/api/drag/end", methods=["POST"])
@require_api_key
def api_drag_end():
    plan = call(board().drag_end, _drag_event())
    if plan is None:
        return jsonify({"ok": True, "moved": False})
    return jsonify({
        "ok": True,
        "moved": True,
        "lead_id": plan.lead_id,
        "column_id": plan.target_column_id,
        "order": plan.target_order,
        "renumbered": plan.renumbered,
    })


# ── Column routes ────────────────────────────────────────────────────────────

@app.route("/api/columns", methods=["POST"])
@require_api_key
def api_create_column():
    column = call(board().add_column, body().get("title", ""))
    if column is None:
        return outcome(False)
    return jsonify({"column": column.to_dict()}), 201


@app.route("/api/columns/<column_id>", methods=["PATCH"])
@require_api_key
def api_rename_column(column_id):
    return outcome(call(board().rename_column, column_id, body().get("title", "")))


@app.route("/api/columns/<column_id>", methods=["DELETE"])
@require_api_key
def api_delete_column(column_id):
    return outcome(call(board().delete_column, column_id))


# ── Lead routes ──────────────────────────────────────────────────────────────

def _created_lead(lead):
    if lead is None:
        return outcome(False)
    return jsonify({"lead": lead.to_dict()}), 201


@app.route("/api/leads", methods=["POST"])
@require_api_key
def api_create_lead():
    data = body()
    lead = call(
        board().add_lead,
        data.get("title", ""),
        data.get("details", ""),
        save_as_customer=bool(data.get("save_as_customer", False)),
    )
    return _created_lead(lead)


@app.route("/api/leads/quick", methods=["POST"])
@require_api_key
def api_quick_lead():
    column_id = body().get("column_id", "")
    if not column_id:
        return jsonify({"error": "column_id is required"}), 400
    return _created_lead(call(board().add_quick_lead, column_id))


@app.route("/api/leads/from-customer", methods=["POST"])
@require_api_key
def api_lead_from_customer():
    customer_id = body().get("customer_id", "")
    if not customer_id:
        return jsonify({"error": "customer_id is required"}), 400
    return _created_lead(call(board().add_lead_from_customer, customer_id))


@app.route("/api/leads/<lead_id>", methods=["PATCH"])
@require_api_key
def api_edit_lead(lead_id):
    data = body()
    return outcome(call(board().edit_lead, lead_id, data.get("title"), data.get("details")))


@app.route("/api/leads/<lead_id>", methods=["DELETE"])
@require_api_key
def api_delete_lead(lead_id):
    return outcome(call(board().delete_lead, lead_id))


@app.route("/api/leads/<lead_id>/note", methods=["PUT"])
@require_api_key
def api_set_note(lead_id):
    return outcome(call(board().set_note, lead_id, body().get("note")))


@app.route("/api/leads/<lead_id>/reminder", methods=["PUT"])
@require_api_key
def api_set_reminder(lead_id):
    data = body()
    return outcome(call(board().set_reminder, lead_id, data.get("text"), data.get("time")))


@app.route("/api/leads/<lead_id>/assignee", methods=["PUT"])
@require_api_key
def api_assign_lead(lead_id):
    return outcome(call(board().assign_lead, lead_id, body().get("user_id")))


@app.route("/api/leads/<lead_id>/emergency", methods=["POST"])
@require_api_key
def api_toggle_emergency(lead_id):
    return outcome(call(board().toggle_emergency, lead_id))


@app.route("/api/leads/<lead_id>/complete", methods=["POST"])
@require_api_key
def api_complete_lead(lead_id):
    return outcome(call(board().complete_lead, lead_id))


@app.route("/api/leads/<lead_id>/restore", methods=["POST"])
@require_api_key
def api_restore_lead(lead_id):
    return outcome(call(board().restore_lead, lead_id))


# ── Customer routes ──────────────────────────────────────────────────────────

CUSTOMER_KEYS = ("phone", "email", "details", "member_names", "assigned_user_ids")


@app.route("/api/customers", methods=["POST"])
@require_api_key
def api_create_customer():
    data = body()
    values = {k: data[k] for k in CUSTOMER_KEYS if k in data}
    customer = call(board().create_customer, data.get("name", ""), **values)
    if customer is None:
        return outcome(False)
    return jsonify({"customer": customer.to_dict()}), 201


@app.route("/api/customers/<customer_id>", methods=["PATCH"])
@require_api_key
def api_update_customer(customer_id):
    data = body()
    values = {k: data[k] for k in ("name",) + CUSTOMER_KEYS if k in data}
    return outcome(call(board().update_customer, customer_id, **values))


@app.route("/api/customers/<customer_id>", methods=["DELETE"])
@require_api_key
def api_delete_customer(customer_id):
    return outcome(call(board().delete_customer, customer_id))


@app.route("/api/customers/<customer_id>/documents/<kind>", methods=["POST"])
@require_api_key
def api_attach_document(customer_id, kind):
    doc_kind = document_kind(kind)
    upload = request.files.get("file")
    if upload is None:
        return jsonify({"error": "file is required"}), 400
    data = upload.read()
    mime_type = upload.mimetype or "application/octet-stream"
    ok = call(board().attach_document, customer_id, doc_kind, data, mime_type, upload.filename or kind)
    return outcome(ok)


@app.route("/api/customers/<customer_id>/documents/<kind>", methods=["DELETE"])
@require_api_key
def api_remove_document(customer_id, kind):
    return outcome(call(board().remove_document, customer_id, document_kind(kind)))


# ── Auth routes ──────────────────────────────────────────────────────────────

def identity():
    provider = board().identity
    if provider is None:
        raise ValidationError("Accounts are not configured for this backend.")
    return provider


def session_payload(session) -> dict:
    return {"id": session.id, "user_id": session.user_id, "expire": session.expire, "secret": session.secret}


def session_secret() -> str:
    return request.headers.get(SESSION_HEADER, "").strip()


@app.route("/api/auth/login", methods=["POST"])
@require_api_key
def api_login():
    data = body()
    session = identity().login(data.get("email", ""), data.get("password", ""))
    call(board().load_users)
    return jsonify({"session": session_payload(session)})


@app.route("/api/auth/signup", methods=["POST"])
@require_api_key
def api_signup():
    data = body()
    if not data.get("email") or not data.get("password"):
        return jsonify({"error": "email and password are required"}), 400
    session = identity().signup(data.get("name", ""), data["email"], data["password"])
    call(board().load_users)
    return jsonify({"session": session_payload(session)}), 201


@app.route("/api/auth/logout", methods=["POST"])
@require_api_key
def api_logout():
    secret = session_secret()
    if not secret:
        return jsonify({"error": f"{SESSION_HEADER} header is required"}), 400
    identity().logout(secret)
    return jsonify({"ok": True})


@app.route("/api/auth/me")
def api_me():
    user = identity().current_user(session_secret())
    if user is None:
        return jsonify({"error": "Not logged in"}), 401
    return jsonify({"user": user.to_dict()})


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(description="Leadboard Server")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--config", help="Path to leadboard.yaml (overrides LEADBOARD_CONFIG)")
    args = parser.parse_args(argv)

    cfg = Config.load(args.config)
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s [leadboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    if not API_SECRET:
        logger.warning("LEADBOARD_API_SECRET not set; mutating routes will answer 503")

    board_runtime = BoardRuntime(Board.from_config(cfg), timeout=cfg.request_timeout * 3)
    configure(board_runtime.start())

    print(f"""
╔═══════════════════════════════════════╗
║  Leadboard Server                     ║
╠═══════════════════════════════════════╣
║  URL:     http://{args.host}:{args.port:<17}║
║  Backend: {cfg.backend:<28}║
╚═══════════════════════════════════════╝
""")

    try:
        app.run(host=args.host, port=args.port, debug=False, threaded=True)
    finally:
        board_runtime.stop()


if __name__ == "__main__":
    main()
