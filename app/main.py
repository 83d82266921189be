from __future__ import annotations

import os
import threading
from typing import Any, Dict, Generator

from flask import Flask, Response, jsonify, request, send_file

from app.imagescraper import config
from app.imagescraper.config_validation import validate_runtime_config
from app.imagescraper.events import EventStream
from app.imagescraper.healthcheck import run_health_checks
from app.imagescraper.orchestrator import SessionManager
from app.imagescraper.settings import Settings, load_settings, save_settings
from app.imagescraper.utils import ensure_dirs, log_line
from app.imagescraper.logging_utils import _scraper_event

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "dev-secret-change-me")

# Initialise storage paths on import so WSGI entrypoints also have the
# expected environment ready.
ensure_dirs()

MANAGER = SessionManager()
SSE_HEARTBEAT_SECONDS = 15.0
_SETTINGS_LOCK = threading.Lock()


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _event_generator(stream: EventStream) -> Generator[str, None, None]:
    """Yield Server-Sent Event frames for session events."""

    try:
        yield ": connected\n\n"
        while True:
            yield stream.next_message(SSE_HEARTBEAT_SECONDS)
    finally:
        stream.close()


def _status_for(result: Dict[str, Any], failure_status: int = 400) -> int:
    return 200 if result.get("success") else failure_status


@app.post("/api/sessions")
def api_start_session() -> Response:
    """Start a scraping session for the posted item identifiers."""

    payload = _json_body()
    items = payload.get("items") or payload.get("asins") or ""
    overrides = payload.get("settings") if isinstance(payload.get("settings"), dict) else {}

    try:
        validate_runtime_config("ui")
    except ValueError as exc:
        return jsonify({"success": False, "error": str(exc)}), 400

    settings = Settings.from_dict(overrides, base=load_settings())
    result = MANAGER.start_session(items, settings)
    if result.get("success"):
        _scraper_event("api", kind="session_started", session_id=result["sessionId"])
        return jsonify(result), 202
    return jsonify(result), 409 if "already running" in str(result.get("error")) else 400


@app.post("/api/sessions/<session_id>/stop")
def api_stop_session(session_id: str) -> Response:
    result = MANAGER.stop_session(session_id)
    return jsonify(result), _status_for(result, 404)


@app.get("/api/sessions/active")
def api_active_session() -> Response:
    return jsonify(MANAGER.query_active_session())


@app.post("/api/extractions")
def api_report_extraction() -> Response:
    payload = _json_body()
    worker_id = payload.get("workerId")
    try:
        worker_id = int(worker_id) if worker_id is not None else None
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "workerId must be an integer"}), 400

    data = payload.get("data")
    result = MANAGER.report_extraction(
        str(payload.get("itemId") or ""),
        data if isinstance(data, dict) else {},
        worker_id=worker_id,
    )
    return jsonify(result), _status_for(result)


@app.get("/api/delivery")
def api_delivery_status() -> Response:
    return jsonify(MANAGER.get_delivery_status())


@app.post("/api/delivery/dead-letters/<int:dead_letter_id>/retry")
def api_retry_dead_letter(dead_letter_id: int) -> Response:
    result = MANAGER.retry_dead_letter(dead_letter_id)
    if result.get("success"):
        return jsonify(result)
    status = 404 if result.get("error") == "Webhook not found" else 502
    return jsonify(result), status


@app.delete("/api/delivery/dead-letters")
def api_clear_dead_letters() -> Response:
    return jsonify(MANAGER.clear_dead_letters())


@app.get("/api/export")
def api_export() -> Response:
    fmt = request.args.get("format", "csv")
    result = MANAGER.export_results(fmt)
    return jsonify(result), _status_for(result, 404 if result.get("error") == "No results to export" else 400)


@app.get("/api/exports/<path:filename>")
def api_download_export(filename: str) -> Response:
    """Serve a previously written export file."""

    target = (config.EXPORTS_DIR / filename).resolve()
    root = config.EXPORTS_DIR.resolve()
    if not str(target).startswith(str(root)):
        return Response("Invalid path", status=400)
    if not target.exists() or not target.is_file():
        return Response("File not found", status=404)
    return send_file(target, as_attachment=True, download_name=target.name)


@app.get("/api/events")
def api_events() -> Response:
    """Stream session events to the browser using SSE."""

    stream = MANAGER.events.open_stream()
    response = Response(_event_generator(stream), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@app.get("/api/settings")
def api_get_settings() -> Response:
    return jsonify(load_settings().to_dict())


@app.post("/api/settings")
def api_save_settings() -> Response:
    with _SETTINGS_LOCK:
        settings = Settings.from_dict(_json_body(), base=load_settings())
        save_settings(settings)
    log_line(
        f"[SETTINGS] Saved zone={settings.target_zone} delay_ms={settings.inter_item_delay_ms}"
    )
    return jsonify({"success": True, "settings": settings.to_dict()})


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration and local stores."""

    result = run_health_checks(entrypoint="ui")
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=8080, threaded=True)
