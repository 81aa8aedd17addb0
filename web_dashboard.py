import os
import sys
import logging
import threading

from flask import Flask, jsonify, request, render_template
from flask_socketio import SocketIO

from speed_monitor import SpeedMonitor
from stats import summarize
from storage import (
    Config,
    ConfigStore,
    HistoryStore,
    StorageError,
    ValidationError,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

# -------------------- PyInstaller FIX --------------------
if getattr(sys, "frozen", False):
    BASE_PATH = sys._MEIPASS  # unpacked onefile bundle
else:
    BASE_PATH = os.path.abspath(os.path.dirname(__file__))

# -------------------- LOGS --------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(threadName)s: %(message)s"
)
log = logging.getLogger("web_dashboard")

# -------------------- Flask + Socket.IO --------------------
app = Flask(
    __name__,
    template_folder=os.path.join(BASE_PATH, "templates"),
)
socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")

# -------------------- Stores --------------------
config_store = ConfigStore()
history_store = HistoryStore()
monitor = None


def init_stores(config=None, history=None):
    """Swap the backing stores (tests, alternative data dirs)."""
    global config_store, history_store, monitor
    config_store = config or ConfigStore()
    history_store = history or HistoryStore()
    monitor = None


def _emit_reading(reading):
    socketio.emit("new_test", reading.to_dict())


def get_monitor():
    global monitor
    if monitor is None:
        monitor = SpeedMonitor(config_store, history_store, on_reading=_emit_reading)
    return monitor


def _error(message, status):
    return jsonify({"error": message}), status


def _parse_bound(name):
    value = request.args.get(name)
    return parse_timestamp(value) if value else None


# -------------------- Routes --------------------
@app.route("/")
def home():
    return render_template("home.html")


@app.get("/api/health")
def api_health():
    return jsonify({"ok": True, "time": format_timestamp(utc_now())})


@app.get("/api/speed-data")
def api_speed_data():
    return jsonify([r.to_dict() for r in history_store.load_all()])


@app.get("/api/speed-data/latest")
def api_speed_data_latest():
    latest = history_store.latest()
    return jsonify(latest.to_dict() if latest else None)


@app.delete("/api/speed-data")
def api_speed_data_delete():
    try:
        history_store.delete_all()
    except StorageError as e:
        log.exception("history delete failed: %s", e)
        return _error("Failed to delete data", 500)
    log.info("History cleared")
    return jsonify({"success": True})


@app.get("/api/config")
def api_config_get():
    try:
        return jsonify(config_store.load().to_dict())
    except StorageError as e:
        log.exception("config read failed: %s", e)
        return _error("Failed to load config", 500)


@app.put("/api/config")
def api_config_put():
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        return _error("invalid_payload", 400)
    try:
        current = config_store.load()
        config = config_store.save(Config(
            interval_minutes=payload.get("intervalMinutes"),
            method=payload.get("method", current.method),
        ))
    except ValidationError as e:
        return _error(str(e), 400)
    except StorageError as e:
        log.exception("config update failed: %s", e)
        return _error("Failed to update config", 500)

    log.info("Measurement interval set to %d min", config.interval_minutes)
    socketio.emit("config_updated", config.to_dict())
    return jsonify(config.to_dict())


@app.get("/api/stats")
def api_stats():
    try:
        start, end = _parse_bound("start"), _parse_bound("end")
        result = summarize(
            history_store.load_all(),
            request.args.get("range", "24h"),
            start=start,
            end=end,
        )
    except ValueError as e:
        return _error(str(e), 400)
    return jsonify(result)


@app.post("/api/test-now")
def api_test_now():
    # only the embedded scheduler may write history from this process
    if not getattr(start_scheduler_once, "started", False):
        return jsonify({"success": False, "error": "scheduler_not_embedded"}), 503
    mon = get_monitor()
    if mon.busy:
        return jsonify({"success": False, "error": "measurement_in_progress"}), 409
    threading.Thread(target=mon.measure_once, name="manual-test", daemon=True).start()
    return jsonify({"success": True})


# -------------------- Scheduler --------------------
def start_scheduler_once():
    if getattr(start_scheduler_once, "started", False):
        return
    get_monitor().start()
    start_scheduler_once.started = True


# -------------------- Socket.IO --------------------
@socketio.on("connect")
def on_connect():
    log.info("Client connected")


@socketio.on("disconnect")
def on_disconnect(reason=None):
    log.info("Client disconnected")


# -------------------- main --------------------
def main():
    if os.environ.get("SPEED_DASHBOARD_RUN_SCHEDULER") == "1":
        start_scheduler_once()
    port = int(os.environ.get("SPEED_DASHBOARD_PORT", "3001"))
    log.info("API server on http://localhost:%d", port)
    socketio.run(app, host="0.0.0.0", port=port, allow_unsafe_werkzeug=True)


if __name__ == "__main__":
    main()
