from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Blueprint, Flask, current_app, jsonify, request, send_file, send_from_directory


# --- Structured JSON logging ---
class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if hasattr(record, "event"):
            entry["event"] = record.event  # type: ignore[attr-defined]
        if hasattr(record, "extra_data"):
            entry.update(record.extra_data)  # type: ignore[attr-defined]
        if record.exc_info and record.exc_info[1]:
            entry["error"] = str(record.exc_info[1])
        return json.dumps(entry, ensure_ascii=False)


def _setup_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)
    # Quiet noisy libraries
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


log = logging.getLogger("pinnotes")

from .gate import AccessGate
from .notes import NoteNotFoundError, NoteStore
from .security import SecurityManager, SecurityStore, UnlockState, VaultLockedError

FRONTEND_DIR = Path(__file__).resolve().parents[1] / "frontend"


# ---------- Config ----------
def _default_data_dir() -> Path:
    return Path(os.environ.get("DATA_DIR", "/data"))


def _default_config_dir() -> Path:
    return Path(os.environ.get("CONFIG_DIR", "/config"))


class AppState:
    """Everything the request handlers share, attached to ``app.extensions``."""

    def __init__(self, data_dir: Path, config_dir: Path, kdf_iterations: Optional[int] = None):
        self.data_dir = data_dir
        self.config_dir = config_dir
        self.security = SecurityStore(config_dir / "security.json")
        self.unlock_state = UnlockState()
        self.notes = NoteStore(data_dir, self.note_cipher)
        self.manager = SecurityManager(self.security, self.unlock_state, notes=self.notes,
                                       kdf_iterations=kdf_iterations)
        self.gate = AccessGate(self.security.snapshot, self.unlock_state)

    def note_cipher(self):
        if self.security.snapshot().pin_enabled:
            return self.unlock_state.require_cipher()
        return None


def _state() -> AppState:
    return current_app.extensions["pinnotes"]


# ---------- Pages ----------
pages = Blueprint("pages", __name__)


@pages.route("/")
def index():
    return send_file(FRONTEND_DIR / "index.html")


@pages.route("/security")
def security_page():
    return send_file(FRONTEND_DIR / "security.html")


@pages.route("/favicon.ico")
def favicon():
    return send_from_directory(FRONTEND_DIR, "favicon.ico", mimetype="image/x-icon")


@pages.route("/health")
def health():
    return {"status": "ok", "notes": _state().notes.count()}


# ---------- Security API ----------
security_api = Blueprint("security_api", __name__, url_prefix="/api/security")


def _pin_field(body: Dict[str, Any], name: str, required: bool = True) -> Optional[str]:
    value = body.get(name)
    if value is None and not required:
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{name}' must be a string")
    return value


def _bad_request(message: str):
    return jsonify({"success": False, "message": message}), 400


@security_api.route("/status", methods=["GET"])
def api_security_status():
    return jsonify(_state().manager.status())


@security_api.route("/unlock", methods=["POST"])
def api_security_unlock():
    body = request.get_json(silent=True) or {}
    try:
        pin = _pin_field(body, "pin")
    except ValueError as e:
        return _bad_request(str(e))
    return jsonify(_state().manager.unlock(pin).to_dict())


@security_api.route("/lock", methods=["POST"])
def api_security_lock():
    return jsonify(_state().manager.lock().to_dict())


@security_api.route("/set-pin", methods=["POST"])
def api_security_set_pin():
    body = request.get_json(silent=True) or {}
    try:
        new_pin = _pin_field(body, "new_pin")
        current_pin = _pin_field(body, "current_pin", required=False)
    except ValueError as e:
        return _bad_request(str(e))
    return jsonify(_state().manager.set_pin(new_pin, current_pin=current_pin).to_dict())


@security_api.route("/remove-pin", methods=["POST"])
def api_security_remove_pin():
    body = request.get_json(silent=True) or {}
    try:
        pin = _pin_field(body, "pin")
    except ValueError as e:
        return _bad_request(str(e))
    return jsonify(_state().manager.remove_pin(pin).to_dict())


# ---------- Notes API ----------
notes_api = Blueprint("notes_api", __name__, url_prefix="/api/notes")


@notes_api.errorhandler(NoteNotFoundError)
def _note_not_found(e):
    return jsonify({"error": "Not found"}), 404


@notes_api.errorhandler(VaultLockedError)
def _vault_locked(e):
    log.warning("Note access while locked", extra={"event": "vault_locked"})
    return jsonify({"success": False, "message": str(e), "locked": True}), 423


@notes_api.route("", methods=["GET"])
def api_list_notes():
    include_deleted = request.args.get("include_deleted", "false").lower() == "true"
    sort_key = request.args.get("sort", "updated")
    q = request.args.get("q", "").strip()
    return jsonify(_state().notes.list(include_deleted=include_deleted, q=q, sort_key=sort_key))


@notes_api.route("", methods=["POST"])
def api_create_note():
    body = request.get_json(silent=True) or {}
    meta = _state().notes.create(
        ext=str(body.get("ext", "md")),
        title=str(body.get("title", "")),
        content=str(body.get("content", "")),
    )
    return jsonify(meta), 201


@notes_api.route("/count", methods=["GET"])
def api_count_notes():
    return jsonify({"count": _state().notes.count()})


@notes_api.route("/<note_id>", methods=["GET"])
def api_get_note(note_id: str):
    meta, content = _state().notes.get(note_id)
    return jsonify({"meta": meta, "content": content})


@notes_api.route("/<note_id>/content", methods=["PUT"])
def api_save_content(note_id: str):
    body = request.get_json(silent=True) or {}
    content = body.get("content", "")
    if not isinstance(content, str):
        return jsonify({"error": "content must be a string"}), 400
    base_rev = int(body.get("base_rev", 0) or 0)
    try:
        meta = _state().notes.save_content(note_id, content)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"rev": meta["rev"], "updated": meta["updated"], "base_rev": base_rev})


@notes_api.route("/<note_id>/meta", methods=["PUT"])
def api_update_meta(note_id: str):
    body = request.get_json(silent=True) or {}
    pinned = body.get("pinned", None)
    try:
        meta = _state().notes.update_meta(
            note_id,
            title=body.get("title", None),
            pinned=None if pinned is None else bool(pinned),
        )
    except FileExistsError as e:
        return jsonify({"error": str(e)}), 409
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(meta)


@notes_api.route("/<note_id>", methods=["DELETE"])
def api_delete_note(note_id: str):
    if not _state().notes.delete(note_id):
        return jsonify({"ok": True, "already_deleted": True})
    return jsonify({"ok": True})


@notes_api.route("/<note_id>/restore", methods=["POST"])
def api_restore_note(note_id: str):
    if not _state().notes.restore(note_id):
        return jsonify({"ok": True, "already_active": True})
    return jsonify({"ok": True})


# ---------- App ----------
def create_app(data_dir: Optional[Path] = None, config_dir: Optional[Path] = None,
               kdf_iterations: Optional[int] = None) -> Flask:
    state = AppState(
        Path(data_dir) if data_dir is not None else _default_data_dir(),
        Path(config_dir) if config_dir is not None else _default_config_dir(),
        kdf_iterations=kdf_iterations,
    )
    app = Flask(__name__, static_folder=str(FRONTEND_DIR), static_url_path="/static")
    app.extensions["pinnotes"] = state
    state.gate.install(app)
    app.register_blueprint(pages)
    app.register_blueprint(security_api)
    app.register_blueprint(notes_api)
    log.info("Security settings loaded", extra={"event": "startup", "extra_data": {
        "pin_enabled": state.security.snapshot().pin_enabled, "data_dir": str(state.data_dir)}})
    return app


def main() -> None:
    _setup_logging()
    app = create_app()
    port = int(os.environ.get("PORT", "8060"))
    app.run(host="0.0.0.0", port=port, threaded=True)


if __name__ == "__main__":
    main()
