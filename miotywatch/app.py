#!/usr/bin/env python3
"""
miotywatch: mioty EdgeCard watchdog with a small JSON API.

- Discovers the EdgeCard over ssh, provisions host networking once,
  and keeps the card's config/status mirrored in memory.
- Restarts the remote base-station service whenever it is found stopped.
- Serves the mirrored records and manual service actions over HTTP.

Runs the watchdog loop on its own thread and Flask on werkzeug threads;
SIGINT/SIGTERM shut both down.
"""

from __future__ import annotations

import argparse
import concurrent.futures
import dataclasses
import logging
import logging.handlers
import os
import signal
import sys
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from flask import Flask, Response, jsonify, request
from werkzeug.serving import WSGIRequestHandler, make_server

from . import __version__
from .config import DEFAULT_LOG_LIMIT, Settings, load_settings
from .models import Connection, record_to_dict
from .provisioner import HostProvisioner
from .service import ServiceController
from .store import StateStore
from .transport import LocalRunner, RemoteFault, RemoteTimeout, SftpFetcher, SshExecutor, check_identity
from .watchdog import NotConnected, Watchdog, WatchdogRunner

log = logging.getLogger(__name__)

Submit = Callable[[Awaitable[Any]], Any]

# fields a client may set through PUT /api/config, with accepted types
_EDITABLE_CONFIG: Dict[str, Tuple[type, ...]] = {
    "base_station_name": (str,),
    "base_station_vendor": (str,),
    "base_station_model": (str,),
    "service_center_addr": (str,),
    "service_center_port": (int, str),
    "profile": (str,),
    "tls_auth_required": (bool,),
    "tls_allow_insecure": (bool,),
}

_ACTIONS = ("start", "stop", "restart", "toggle-autostart")

# written over the local config record by POST /api/base-station/factory-reset
FACTORY_CONFIG: Dict[str, Any] = {
    "base_station_name": "Sentinum Edge mioty",
    "base_station_vendor": "Miromico",
    "base_station_model": "EDGE-GW-MY-868",
    "service_center_addr": "eu3.loriot.io",
    "service_center_port": 727,
    "profile": "EU1",
    "tls_auth_required": True,
}


def edge_credentials(unique_id: str) -> Dict[str, str]:
    """EdgeCard root login: the password is the first six groups of the unique id."""
    return {
        "username": "root",
        "password": "-".join(unique_id.split("-")[:6]),
        "note": "Password is derived from the first 6 bytes of the unique base station ID",
    }


class QuietWSGIRequestHandler(WSGIRequestHandler):
    _SUPPRESSED_ERRORS = (
        "Bad request version",
        "Bad request syntax",
        "Bad HTTP/0.9 request type",
    )

    def log_error(self, format: str, *args: Any) -> None:
        message = format % args
        if any(token in message for token in self._SUPPRESSED_ERRORS):
            return
        super().log_error(format, *args)


# ---- Logging -------------------------------------------------------------------


def _utc_formatter() -> logging.Formatter:
    fmt = logging.Formatter("%(asctime)sZ - %(levelname)s - %(name)s - %(message)s")
    fmt.converter = time.gmtime
    return fmt


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Root logging to stdout and, when writable, a rotating file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    fmt = _utc_formatter()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)
    # paramiko logs every transport negotiation at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)

    if not log_file:
        return
    try:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        rot = logging.handlers.RotatingFileHandler(log_file, maxBytes=2 * 1024 * 1024, backupCount=5)
    except OSError as exc:
        log.warning("File logging disabled (%s): %s", log_file, exc)
        return
    rot.setFormatter(fmt)
    root.addHandler(rot)


# ---- Flask app -----------------------------------------------------------------


def _parse_limit(raw: Optional[str]) -> int:
    if raw is None or raw == "":
        return DEFAULT_LOG_LIMIT
    value = int(raw)
    if value < 0:
        raise ValueError("limit must be >= 0")
    return value


def _config_changes(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("expected a JSON object")
    changes: Dict[str, Any] = {}
    for key, value in payload.items():
        if key in ("unique_base_station_id", "updated_at"):
            continue  # pinned / server-set
        types = _EDITABLE_CONFIG.get(key)
        if types is None:
            raise ValueError(f"unknown field {key!r}")
        # bool is an int subclass; keep flags and ports apart
        if isinstance(value, bool) and bool not in types:
            raise ValueError(f"{key} has the wrong type")
        if not isinstance(value, types):
            raise ValueError(f"{key} has the wrong type")
        changes[key] = value
    return changes


def create_app(watchdog: Watchdog, submit: Submit) -> Flask:
    """
    Build the JSON API around a watchdog.

    `submit` runs a watchdog coroutine to completion and returns its result;
    in production it hands the coroutine to the watchdog loop thread.
    """
    store: StateStore = watchdog.store
    app = Flask(__name__)

    def snapshot() -> Dict[str, Any]:
        data = store.snapshot()
        data["watchdog"] = watchdog.describe()
        return data

    def run_action(label: str, coro_fn: Callable[[], Awaitable[Any]]) -> Tuple[Response, int]:
        try:
            result = submit(coro_fn())
        except NotConnected as exc:
            return jsonify({"ok": False, "msg": str(exc)}), 409
        except RemoteTimeout as exc:
            store.add_log("ERROR", f"Failed to {label} base station: {exc}", "base-station")
            return jsonify({"ok": False, "msg": str(exc)}), 504
        except RemoteFault as exc:
            store.add_log("ERROR", f"Failed to {label} base station: {exc}", "base-station")
            return jsonify({"ok": False, "msg": str(exc)}), 502
        except concurrent.futures.TimeoutError:
            return jsonify({"ok": False, "msg": f"{label} timed out"}), 504
        body: Dict[str, Any] = {"ok": True, "status": record_to_dict(store.get_status())}
        if result is not None:
            body["result"] = result
        return jsonify(body), 200

    @app.get("/api/health")
    def api_health() -> Response:
        return jsonify({"ok": True, "ts": time.time(), "version": __version__})

    @app.get("/api/snapshot")
    def api_snapshot() -> Response:
        return jsonify(snapshot())

    @app.get("/api/connection")
    def api_connection() -> Response:
        return jsonify(record_to_dict(store.get_connection()))

    @app.get("/api/config")
    def api_config() -> Response:
        return jsonify(record_to_dict(store.get_config()))

    @app.put("/api/config")
    def api_config_update() -> Tuple[Response, int]:
        try:
            changes = _config_changes(request.get_json(silent=True))
        except ValueError as exc:
            return jsonify({"ok": False, "msg": str(exc)}), 400
        config = store.update_config(**changes)
        store.add_log("INFO", "Base station configuration updated", "config")
        return jsonify(record_to_dict(config)), 200

    @app.get("/api/base-station/status")
    def api_status() -> Response:
        return jsonify(record_to_dict(store.get_status()))

    @app.post("/api/base-station/factory-reset")
    def api_factory_reset() -> Response:
        store.add_log("WARN", "Factory reset initiated - all settings will be restored to defaults", "system")
        config = store.update_config(**FACTORY_CONFIG)
        store.add_log("INFO", "Factory reset completed successfully", "system")
        return jsonify({"ok": True, "config": record_to_dict(config)})

    @app.get("/api/credentials")
    def api_credentials() -> Response:
        return jsonify(edge_credentials(store.get_config().unique_base_station_id))

    @app.post("/api/base-station/<action>")
    def api_action(action: str) -> Tuple[Response, int]:
        if action not in _ACTIONS:
            return jsonify({"ok": False, "msg": f"unknown action {action!r}"}), 404
        handlers = {
            "start": watchdog.start_service,
            "stop": watchdog.stop_service,
            "restart": watchdog.restart_service,
            "toggle-autostart": watchdog.toggle_autostart,
        }
        return run_action(action, handlers[action])

    @app.get("/api/logs")
    def api_logs() -> Tuple[Response, int]:
        try:
            limit = _parse_limit(request.args.get("limit"))
        except ValueError:
            return jsonify({"ok": False, "msg": "limit must be a non-negative integer"}), 400
        return jsonify([record_to_dict(e) for e in store.get_logs(limit)]), 200

    @app.delete("/api/logs")
    def api_logs_clear() -> Response:
        store.clear_logs()
        return jsonify({"ok": True})

    @app.get("/api/system")
    def api_system() -> Response:
        data = record_to_dict(store.get_system_info()) or {}
        data["watchdog"] = watchdog.describe()
        return jsonify(data)

    return app


# ---- Process wiring ------------------------------------------------------------


def _install_signal_handlers(shutdown_server: Callable[[], None]) -> None:
    shutdown_started = threading.Event()

    def _handler(signum: int, _frame: Any) -> None:
        if shutdown_started.is_set():
            return
        shutdown_started.set()
        threading.Thread(
            target=shutdown_server,
            name=f"shutdown-signal-{signum}",
            daemon=True,
        ).start()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except (ValueError, OSError) as exc:
            log.warning("Cannot install handler for %s: %s", sig, exc)


def build_watchdog(settings: Settings, *, provision_host: bool = True) -> Watchdog:
    store = StateStore(
        pinned_id=settings.pinned_id,
        cli_version=__version__,
        connection=Connection(name=settings.profile_name, ip_address=settings.host_address),
    )
    executor = SshExecutor(settings)
    provisioner = HostProvisioner(LocalRunner(settings), settings, on_log=store.add_log)
    return Watchdog(
        store,
        executor,
        SftpFetcher(settings),
        provisioner,
        ServiceController(executor, settings.service_name),
        settings,
        provision_host=provision_host,
    )


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="miotywatch", description="mioty EdgeCard watchdog")
    parser.add_argument("--host", default=None, help="HTTP bind address (default: MIOTY_HTTP_HOST)")
    parser.add_argument("--port", type=int, default=None, help="HTTP port (default: MIOTY_HTTP_PORT)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Process log level",
    )
    parser.add_argument(
        "--no-provision",
        action="store_true",
        help="Leave host networking alone; only enable/start the remote service",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    if args.host:
        settings = dataclasses.replace(settings, http_host=args.host)
    if args.port is not None:
        settings = dataclasses.replace(settings, http_port=args.port)
    if not 0 < settings.http_port < 65536:
        sys.stderr.write(f"FATAL: invalid HTTP port {settings.http_port}\n")
        return 2

    setup_logging(args.log_level, settings.log_file)

    ok, detail = check_identity(settings.ssh_key)
    if ok:
        log.info("Using ssh key %s (%s)", settings.ssh_key, detail)
    else:
        log.warning("%s", detail)

    watchdog = build_watchdog(settings, provision_host=settings.provision_host and not args.no_provision)
    runner = WatchdogRunner(watchdog)
    submit_timeout = settings.ssh_command_timeout_s + 5.0
    app = create_app(watchdog, lambda coro: runner.submit(coro, submit_timeout))

    try:
        server = make_server(
            settings.http_host,
            settings.http_port,
            app,
            threaded=True,
            request_handler=QuietWSGIRequestHandler,
        )
    except OSError as exc:
        sys.stderr.write(f"FATAL: cannot listen on {settings.http_host}:{settings.http_port}: {exc}\n")
        return 1

    log.info("miotywatch %s listening on %s:%d", __version__, settings.http_host, settings.http_port)
    runner.start()
    _install_signal_handlers(server.shutdown)
    try:
        server.serve_forever()
    finally:
        runner.stop()
        server.server_close()
    return 0
