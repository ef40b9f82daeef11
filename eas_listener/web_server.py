#!/usr/bin/env python3
"""
aiohttp server for the EAS recording archive and the monitoring channel.

Endpoints:
  GET  /archive?latest_id=true               -> newest recording id (text, -1 if none)
  GET  /archive?recording_id=<n>             -> WAV body with byte-range support
  HEAD /archive?recording_id=<n>             -> same status/headers, no body
  GET  /archive?fetch_alerts=true[&filter_alerts=watched_fips]
                                             -> JSON array of parsed alerts
  POST /archive/vacuum                       -> retire recordings, rotate alert log
  GET  /api/health                           -> {"status": "OK"}
  GET  /api/status                           -> {"streams": [...], "active_alerts": [...]}
  POST /api/alerts                           -> replace the active alert list
  POST /api/streams/<event>                  -> stream telemetry from the decoder
  GET  /api/logs?tail=N                      -> {"logs": [...]} newest first
  GET  /ws                                   -> WebSocket: Snapshot, then Stream/Log/Alerts
  GET  /healthz                              -> "ok"
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import functools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from aiohttp import WSMsgType, web
from aiohttp.web import AppKey

from . import config as config_module
from .alert_feed import ActiveAlertBridge
from .alert_log import MandatoryFieldMissing, load_alert_window
from .archive import (
    DEFAULT_CHUNK_SIZE,
    ArchiveError,
    ArchiveService,
    RangeNotSatisfiable,
    iter_chunks,
    vacuum,
)
from .manifest_cache import DEFAULT_MANIFEST_DIRNAME, DEFAULT_RECORDING_GLOB, ManifestCache
from .monitoring import SNAPSHOT_LOG_COUNT, MonitoringHub, MonitoringLogHandler

WEB_SERVER_EXECUTOR_MAX_WORKERS = 4
WS_HEARTBEAT_SECONDS = 30.0
DEFAULT_LOG_TAIL = SNAPSHOT_LOG_COUNT
WATCHED_FIPS_FILTER = "watched_fips"

SHUTDOWN_EVENT_KEY: AppKey[asyncio.Event] = web.AppKey("shutdown_event", asyncio.Event)
ARCHIVE_SERVICE_KEY: AppKey[ArchiveService] = web.AppKey("archive_service", ArchiveService)
MONITORING_HUB_KEY: AppKey[MonitoringHub] = web.AppKey("monitoring_hub", MonitoringHub)
LOG_HANDLER_KEY: AppKey[MonitoringLogHandler] = web.AppKey(
    "monitoring_log_handler", MonitoringLogHandler
)
ALERT_BRIDGE_KEY: AppKey[ActiveAlertBridge] = web.AppKey("active_alert_bridge", ActiveAlertBridge)
STREAM_EVENTS = ("connecting", "connected", "activity", "error", "disconnected")

_CLIENT_GONE = (
    ConnectionResetError,
    ConnectionAbortedError,
    BrokenPipeError,
    ConnectionError,
)


def _quiet_noisy_dependencies() -> None:
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def _query_flag(value: str | None) -> bool:
    return value is not None and value.strip().lower() not in {"", "0", "false", "no"}


def _error_response(exc: ArchiveError) -> web.Response:
    return web.Response(
        status=exc.status,
        text=str(exc) or "error",
        headers={"Cache-Control": "no-store"},
    )


def build_app(
    cfg: dict[str, Any] | None = None,
    *,
    manifest_cache: ManifestCache | None = None,
    hub: MonitoringHub | None = None,
) -> web.Application:
    log = logging.getLogger("eas_archive")
    cfg = cfg if cfg is not None else config_module.get_cfg()
    archive_cfg = cfg.get("archive", {})
    monitoring_cfg = cfg.get("monitoring", {})

    recordings_root = config_module.recording_dir(cfg)
    pattern = str(archive_cfg.get("recording_glob") or DEFAULT_RECORDING_GLOB)
    if manifest_cache is None:
        manifest_cache = ManifestCache(
            recordings_root,
            pattern=pattern,
            manifest_dirname=str(
                archive_cfg.get("manifest_dirname") or DEFAULT_MANIFEST_DIRNAME
            ),
        )
    service = ArchiveService(manifest_cache)

    max_logs = int(monitoring_cfg.get("max_logs", 500) or 500)
    if hub is None:
        hub = MonitoringHub(
            max_logs=max_logs,
            inactivity_timeout=float(monitoring_cfg.get("inactivity_timeout_sec", 30.0)),
        )

    try:
        chunk_size = int(archive_cfg.get("chunk_size", DEFAULT_CHUNK_SIZE))
    except (TypeError, ValueError):
        chunk_size = DEFAULT_CHUNK_SIZE
    if chunk_size <= 0:
        chunk_size = DEFAULT_CHUNK_SIZE
    max_alerts = int(archive_cfg.get("max_alerts", 50) or 50)
    timezone = str(cfg.get("timezone") or "UTC")

    app = web.Application()
    app[SHUTDOWN_EVENT_KEY] = asyncio.Event()
    app[ARCHIVE_SERVICE_KEY] = service
    app[MONITORING_HUB_KEY] = hub

    app[LOG_HANDLER_KEY] = log_handler = MonitoringLogHandler(hub)

    async def _init_hub(_: web.Application) -> None:
        hub.set_loop(asyncio.get_running_loop())
        logging.getLogger("eas_archive").addHandler(log_handler)

    async def _cleanup_hub(_: web.Application) -> None:
        logging.getLogger("eas_archive").removeHandler(log_handler)

    try:
        alert_poll_interval = float(monitoring_cfg.get("alert_log_poll_sec", 5.0) or 0.0)
    except (TypeError, ValueError):
        alert_poll_interval = 5.0

    app.on_startup.append(_init_hub)

    if alert_poll_interval > 0:
        alert_bridge = ActiveAlertBridge(
            hub=hub,
            log_path=config_module.alert_log_path(cfg),
            poll_interval=alert_poll_interval,
            max_alerts=max_alerts,
            watched=archive_cfg.get("watched_fips") or None,
            tz=timezone,
        )
        app[ALERT_BRIDGE_KEY] = alert_bridge

        async def _start_alert_bridge(_: web.Application) -> None:
            await alert_bridge.start()

        async def _stop_alert_bridge(_: web.Application) -> None:
            await alert_bridge.stop()

        app.on_startup.append(_start_alert_bridge)
        app.on_cleanup.append(_stop_alert_bridge)

    app.on_cleanup.append(_cleanup_hub)

    # ---------- Archive ----------

    async def _serve_latest_id() -> web.Response:
        loop = asyncio.get_running_loop()
        latest = await loop.run_in_executor(None, service.latest_id)
        return web.Response(text=str(latest), headers={"Cache-Control": "no-store"})

    async def _serve_recording(request: web.Request, raw_id: str) -> web.StreamResponse:
        loop = asyncio.get_running_loop()
        try:
            delivery = await loop.run_in_executor(
                None, service.prepare, raw_id, request.headers.get("Range")
            )
        except RangeNotSatisfiable as exc:
            return web.Response(
                status=exc.status,
                headers={
                    "Content-Range": f"bytes */{exc.size}",
                    "Accept-Ranges": "bytes",
                    "Cache-Control": "no-store",
                },
            )
        except ArchiveError as exc:
            if exc.status >= 500:
                log.error("archive delivery failed for id %r: %s", raw_id, exc)
            return _error_response(exc)

        try:
            handle = await loop.run_in_executor(None, service.open, delivery)
        except ArchiveError as exc:
            return _error_response(exc)

        byte_range = delivery.byte_range
        response = web.StreamResponse(status=delivery.status)
        response.headers["Content-Type"] = "audio/wav"
        response.headers["Content-Disposition"] = f'inline; filename="{delivery.filename}"'
        response.headers["Accept-Ranges"] = "bytes"
        response.headers.setdefault("Cache-Control", "no-store")
        if byte_range.partial:
            response.headers["Content-Range"] = byte_range.content_range
        response.content_length = byte_range.length

        try:
            await response.prepare(request)
            if request.method == "HEAD":
                return response
            chunks = iter_chunks(handle, byte_range.length, chunk_size)
            while True:
                chunk = await loop.run_in_executor(None, next, chunks, b"")
                if not chunk:
                    break
                try:
                    await response.write(chunk)
                except _CLIENT_GONE:
                    log.debug("client went away while streaming %s", delivery.filename)
                    break
        finally:
            with contextlib.suppress(Exception):
                handle.close()
        with contextlib.suppress(Exception):
            await response.write_eof()
        return response

    async def _serve_alerts(request: web.Request) -> web.Response:
        loop = asyncio.get_running_loop()
        watched = None
        if request.query.get("filter_alerts") == WATCHED_FIPS_FILTER:
            watched = archive_cfg.get("watched_fips") or ""
        load = functools.partial(
            load_alert_window,
            config_module.alert_log_path(cfg),
            max_alerts=max_alerts,
            watched=watched,
            tz=timezone,
        )
        try:
            records = await loop.run_in_executor(None, load)
        except MandatoryFieldMissing as exc:
            log.error("alert log contains an invalid duration: %s", exc)
            return web.json_response({"error": str(exc)}, status=500)
        return web.json_response(
            [record.to_dict() for record in records],
            headers={"Cache-Control": "no-store"},
        )

    async def archive(request: web.Request) -> web.StreamResponse:
        query = request.query
        if "latest_id" in query:
            return await _serve_latest_id()
        if "recording_id" in query:
            return await _serve_recording(request, query.get("recording_id", ""))
        if _query_flag(query.get("fetch_alerts")):
            return await _serve_alerts(request)
        raise web.HTTPBadRequest(text="Unsupported archive request.")

    async def archive_vacuum(request: web.Request) -> web.Response:
        loop = asyncio.get_running_loop()
        job = functools.partial(
            vacuum,
            recordings_root,
            config_module.alert_log_path(cfg),
            pattern=pattern,
            old_dirname=str(archive_cfg.get("old_dirname") or "__old__"),
        )
        try:
            result = await loop.run_in_executor(None, job)
        except OSError as exc:
            log.error("vacuum failed: %s", exc)
            return web.json_response({"error": str(exc)}, status=500)
        return web.json_response(
            {
                "moved": len(result.moved),
                "old_dir": str(result.old_dir),
                "alert_log_backup": (
                    str(result.alert_log_backup) if result.alert_log_backup else None
                ),
            }
        )

    # ---------- Monitoring ----------

    async def api_health(_: web.Request) -> web.Response:
        return web.json_response({"status": "OK"})

    async def api_status(_: web.Request) -> web.Response:
        return web.json_response(
            {"streams": hub.stream_snapshots(), "active_alerts": hub.active_alerts()}
        )

    async def _json_body(request: web.Request) -> Any:
        try:
            return await request.json()
        except ValueError:
            raise web.HTTPBadRequest(text="Expected a JSON body.") from None

    async def api_post_alerts(request: web.Request) -> web.Response:
        body = await _json_body(request)
        source_stream = None
        if isinstance(body, dict):
            source_stream = body.get("source_stream") or None
            body = body.get("alerts")
        if not isinstance(body, list) or not all(isinstance(alert, dict) for alert in body):
            raise web.HTTPBadRequest(text="Expected a list of alert objects.")
        hub.broadcast_alerts(body, source_stream=source_stream)
        return web.json_response({"active_alerts": len(body)})

    async def api_post_stream_event(request: web.Request) -> web.Response:
        event = request.match_info["event"]
        if event not in STREAM_EVENTS:
            raise web.HTTPNotFound(text=f"Unknown stream event {event!r}.")
        body = await _json_body(request)
        stream_url = body.get("stream_url") if isinstance(body, dict) else None
        if not isinstance(stream_url, str) or not stream_url:
            raise web.HTTPBadRequest(text="stream_url is required.")
        if event == "connecting":
            hub.note_connecting(stream_url)
        elif event == "connected":
            hub.note_connected(stream_url)
        elif event == "activity":
            hub.note_activity(stream_url)
        elif event == "error":
            hub.note_error(stream_url, str(body.get("error") or "unknown error"))
        else:
            hub.note_disconnected(stream_url)
        stream = next(s for s in hub.stream_snapshots() if s["stream_url"] == stream_url)
        return web.json_response({"stream": stream})

    async def api_logs(request: web.Request) -> web.Response:
        try:
            tail = int(request.query.get("tail", DEFAULT_LOG_TAIL))
        except ValueError:
            tail = DEFAULT_LOG_TAIL
        tail = min(max(tail, 1), hub.max_logs)
        return web.json_response({"logs": hub.recent_logs(tail)})

    async def ws_handler(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT_SECONDS)
        await ws.prepare(request)
        queue = await hub.subscribe()

        async def _pump() -> None:
            while not ws.closed:
                envelope = await queue.get()
                try:
                    await ws.send_json(envelope)
                except _CLIENT_GONE:
                    break
            with contextlib.suppress(Exception):
                await ws.close()

        pump = asyncio.create_task(_pump())
        try:
            async for msg in ws:
                # Server-to-client only; inbound frames are ignored.
                if msg.type == WSMsgType.ERROR:
                    log.debug("websocket error: %s", ws.exception())
                    break
        finally:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await pump
            hub.unsubscribe(queue)
        return ws

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok")

    app.router.add_get("/archive", archive)
    app.router.add_post("/archive/vacuum", archive_vacuum)
    app.router.add_get("/api/health", api_health)
    app.router.add_get("/api/status", api_status)
    app.router.add_post("/api/alerts", api_post_alerts)
    app.router.add_post("/api/streams/{event}", api_post_stream_event)
    app.router.add_get("/api/logs", api_logs)
    app.router.add_get("/ws", ws_handler)
    app.router.add_get("/healthz", healthz)

    return app


class WebServerHandle:
    """Handle returned by start_web_server_in_thread(). Call stop() to cleanly shut down."""
    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    @property
    def hub(self) -> MonitoringHub:
        return self.app[MONITORING_HUB_KEY]

    def stop(self, timeout: float = 5.0):
        log = logging.getLogger("eas_archive")
        log.info("Stopping archive web server ...")
        if self.loop.is_running():
            self.loop.call_soon_threadsafe(self.app[SHUTDOWN_EVENT_KEY].set)

            async def _cleanup():
                try:
                    await self.runner.cleanup()
                except Exception as e:
                    log.warning("Error during aiohttp runner cleanup: %r", e)

            fut = asyncio.run_coroutine_threadsafe(_cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:
                log.warning("Error awaiting cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("archive web server stopped")


def start_web_server_in_thread(
    host: str = "0.0.0.0",
    port: int = 8080,
    *,
    cfg: dict[str, Any] | None = None,
    access_log: bool = False,
) -> WebServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    log = logging.getLogger("eas_archive")

    loop = asyncio.new_event_loop()
    executor = ThreadPoolExecutor(
        max_workers=WEB_SERVER_EXECUTOR_MAX_WORKERS,
        thread_name_prefix="eas_archive_io",
    )
    runner_box = {}
    app_box = {}
    failure_box: dict[str, BaseException] = {}

    def _run():
        asyncio.set_event_loop(loop)
        loop.set_default_executor(executor)
        try:
            app = build_app(cfg)
            runner = web.AppRunner(app, access_log=logging.getLogger("aiohttp.access") if access_log else None)
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except BaseException as exc:
            failure_box["error"] = exc
            executor.shutdown(wait=False, cancel_futures=True)
            return
        runner_box["runner"] = runner
        app_box["app"] = app
        log.info("archive web server started on %s:%s", host, port)
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(runner.cleanup())
            except Exception:
                pass
            executor.shutdown(wait=True, cancel_futures=True)

    t = threading.Thread(target=_run, name="eas_archive_web", daemon=True)
    t.start()

    while "runner" not in runner_box or "app" not in app_box:
        if "error" in failure_box:
            raise RuntimeError(f"archive web server failed to start: {failure_box['error']}")
        time.sleep(0.05)

    return WebServerHandle(t, loop, runner_box["runner"], app_box["app"])


def cli_main():
    parser = argparse.ArgumentParser(description="EAS recording archive HTTP server.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args()

    cfg = config_module.reload_cfg()
    level_name = "DEBUG" if cfg.get("logging", {}).get("dev_mode") else args.log_level
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _quiet_noisy_dependencies()
    log = logging.getLogger("eas_archive")
    active_path = config_module.active_config_path()
    if active_path is not None:
        log.info("Loaded configuration from %s", active_path)
    else:
        log.info(
            "No configuration file found (searched %s); using defaults",
            ", ".join(str(p) for p in config_module.search_paths()) or "-",
        )

    server_cfg = cfg.get("web_server", {})
    bind_host = args.host if args.host else str(server_cfg.get("listen_host", "0.0.0.0"))
    bind_port = args.port if args.port else int(server_cfg.get("listen_port", 8080))
    log.info(
        "Starting archive web server on %s:%s (recordings=%s, access_log=%s)",
        bind_host,
        bind_port,
        config_module.recording_dir(cfg),
        "on" if args.access_log else "off",
    )

    try:
        handle = start_web_server_in_thread(
            host=bind_host,
            port=bind_port,
            cfg=cfg,
            access_log=args.access_log,
        )
    except RuntimeError as exc:
        log.error("Unable to start archive web server: %s", exc)
        return 1
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        handle.stop()
        return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
