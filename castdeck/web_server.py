#!/usr/bin/env python3
"""
aiohttp server for the castdeck control plane.

Behavior:
- A websocket on ``/`` carries the control protocol (auth, start/stop,
  bitrate, device commands) and the live state fan-out.
- Plain requests to ``/`` get the operator UI's ``index.html``; other files in
  the static directory are served as-is.
- Two background timers run for the life of the app: the streaming liveness
  poll and the network interface poll, one second apart by default.

Endpoints:
  GET /          -> control websocket (Upgrade) or index.html
  GET /healthz   -> "ok"
  Static /*      -> operator UI assets
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any, Mapping

from aiohttp import WSMsgType, web

from .config import (
    ConfigError,
    active_config_path,
    get_cfg,
    positive_float,
    positive_int,
    reload_cfg,
    search_paths,
    state_path,
    string_list,
)
from .credentials import DEFAULT_BCRYPT_ROUNDS, AuthError, CredentialStore
from .ifconfig import IfconfigMetricsSource
from .json_store import JsonDocument, PersistenceError
from .network_monitor import MetricsSource, NetworkMonitor
from .pipelines import PipelineCatalog
from .processes import ProcessControl
from .session_hub import SessionHub
from .stream_config import ConfigStore, Resolver
from .supervisor import StreamSupervisor
from .tokens import TokenRegistry

WEBSOCKET_HEARTBEAT_SECONDS = 20.0

SESSION_HUB_KEY = web.AppKey("session_hub", SessionHub)
SUPERVISOR_KEY = web.AppKey("stream_supervisor", StreamSupervisor)
NETWORK_MONITOR_KEY = web.AppKey("network_monitor", NetworkMonitor)
STATIC_DIR_KEY = web.AppKey("static_dir", Path)


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down overly chatty third-party loggers."""

    logging.getLogger("aiohttp.access").setLevel(level)


def build_hub(
    cfg: Mapping[str, Any],
    *,
    process_control: ProcessControl | None = None,
    metrics_source: MetricsSource | None = None,
    resolver: Resolver | None = None,
) -> SessionHub:
    """Load the state documents and wire every component together."""

    log = logging.getLogger("castdeck.web")
    streaming_cfg = cfg.get("streaming", {})
    network_cfg = cfg.get("network", {})
    auth_cfg = cfg.get("auth", {})

    setup = JsonDocument.load(state_path(cfg, "setup_file"), read_only=True)
    device_config = JsonDocument.load(state_path(cfg, "config_file"))
    token_store = JsonDocument.load(state_path(cfg, "auth_tokens_file"))

    rounds = auth_cfg.get("bcrypt_rounds", DEFAULT_BCRYPT_ROUNDS)
    credentials = CredentialStore(
        device_config,
        rounds=positive_int({"rounds": rounds}, "rounds", "auth.bcrypt_rounds"),
    )
    try:
        credentials.migrate_plaintext()
    except (AuthError, PersistenceError) as exc:
        log.error("Unable to hash bootstrap password: %s", exc)
    if not credentials.has_password:
        log.warning("No operator password is set; logins will be refused")

    process_control = process_control or ProcessControl()
    pipelines = PipelineCatalog(setup.snapshot())
    config_store = ConfigStore(
        device_config,
        pipelines,
        bitrate_file=setup.get("bitrate_file"),
        resolver=resolver,
    )
    runner_command = string_list(streaming_cfg, "runner_command", "streaming.runner_command")
    if not runner_command:
        raise ConfigError("streaming.runner_command must not be empty")
    supervisor = StreamSupervisor(
        config_store,
        process_control,
        runner_command=runner_command,
        runner_pattern=str(streaming_cfg.get("runner_pattern") or runner_command[-1]),
        encoder_process=str(streaming_cfg.get("encoder_process") or "belacoder"),
        helper_processes=string_list(
            streaming_cfg, "helper_processes", "streaming.helper_processes"
        ),
        poll_interval=positive_float(
            streaming_cfg, "status_poll_interval", "streaming.status_poll_interval"
        ),
        liveness_confirmations=positive_int(
            streaming_cfg, "liveness_confirmations", "streaming.liveness_confirmations"
        ),
    )
    if metrics_source is None:
        metrics_source = IfconfigMetricsSource(
            ignore=string_list(network_cfg, "ignore_interfaces", "network.ignore_interfaces")
        )
    network_monitor = NetworkMonitor(
        metrics_source,
        poll_interval=positive_float(network_cfg, "poll_interval", "network.poll_interval"),
    )
    return SessionHub(
        credentials=credentials,
        tokens=TokenRegistry(token_store),
        config_store=config_store,
        pipelines=pipelines,
        supervisor=supervisor,
        network_monitor=network_monitor,
        process_control=process_control,
    )


def build_app(
    cfg: Mapping[str, Any] | None = None,
    *,
    process_control: ProcessControl | None = None,
    metrics_source: MetricsSource | None = None,
    resolver: Resolver | None = None,
) -> web.Application:
    log = logging.getLogger("castdeck.web")
    if cfg is None:
        cfg = get_cfg()

    hub = build_hub(
        cfg,
        process_control=process_control,
        metrics_source=metrics_source,
        resolver=resolver,
    )
    supervisor = hub.supervisor
    network_monitor = hub.network_monitor
    static_dir = state_path(cfg, "static_dir")

    app = web.Application()
    app[SESSION_HUB_KEY] = hub
    app[SUPERVISOR_KEY] = supervisor
    app[NETWORK_MONITOR_KEY] = network_monitor
    app[STATIC_DIR_KEY] = static_dir

    async def _start_pollers(_: web.Application) -> None:
        await supervisor.start_polling()
        await network_monitor.start()

    async def _stop_pollers(_: web.Application) -> None:
        await network_monitor.stop()
        await supervisor.stop_polling()

    async def _close_sockets(app: web.Application) -> None:
        for session in app[SESSION_HUB_KEY].sessions:
            transport = session.transport
            if isinstance(transport, web.WebSocketResponse):
                with contextlib.suppress(Exception):
                    await transport.close(code=1001, message=b"Server shutdown")

    app.on_startup.append(_start_pollers)
    app.on_shutdown.append(_close_sockets)
    app.on_cleanup.append(_stop_pollers)

    async def control_socket(request: web.Request, ws: web.WebSocketResponse) -> web.WebSocketResponse:
        await ws.prepare(request)
        session = hub.connect(ws)
        writer = asyncio.create_task(session.run_writer())
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        await hub.handle_frame(session, msg.data)
                    except Exception:
                        log.exception("Unhandled error processing message from client %d", session.id)
                elif msg.type == WSMsgType.ERROR:
                    log.warning("Websocket error from client %d: %s", session.id, ws.exception())
        finally:
            hub.disconnect(session)
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
        return ws

    async def index(request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=WEBSOCKET_HEARTBEAT_SECONDS)
        if ws.can_prepare(request).ok:
            return await control_socket(request, ws)
        index_path = static_dir / "index.html"
        if not index_path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(index_path)

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    # Routes
    app.router.add_get("/", index)
    app.router.add_get("/healthz", healthz)
    if static_dir.is_dir():
        app.router.add_static("/", static_dir, show_index=False)
    else:
        log.warning("Static directory %s not found; serving the control socket only", static_dir)
    return app


async def _serve(app: web.Application, host: str, port: int, *, access_log: bool) -> None:
    log = logging.getLogger("castdeck.web")
    runner = web.AppRunner(
        app,
        access_log=logging.getLogger("aiohttp.access") if access_log else None,
    )
    await runner.setup()
    try:
        site = web.TCPSite(runner, host, port)
        await site.start()
        log.info("castdeck listening on %s:%s", host, port)
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


def cli_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Streaming appliance control service.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    cfg = reload_cfg()
    level_name = "DEBUG" if cfg.get("logging", {}).get("dev_mode") else args.log_level
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if not args.access_log:
        _quiet_noisy_dependencies()
    log = logging.getLogger("castdeck.web")
    settings_file = active_config_path()
    if settings_file is None:
        log.info("No settings file found (searched %s); using defaults", ", ".join(map(str, search_paths())))
    else:
        log.info("Loaded settings from %s", settings_file)

    server_cfg = cfg.get("web_server", {})
    bind_host = args.host or str(server_cfg.get("listen_host") or "0.0.0.0")
    try:
        bind_port = args.port or int(server_cfg.get("listen_port") or 80)
    except (TypeError, ValueError):
        log.error("web_server.listen_port must be an integer")
        return 1

    try:
        app = build_app(cfg)
    except ConfigError as exc:
        log.error("Unable to start castdeck: %s", exc)
        return 1

    try:
        asyncio.run(_serve(app, bind_host, bind_port, access_log=args.access_log))
    except KeyboardInterrupt:
        log.info("castdeck stopped")
    except OSError as exc:
        log.error("Unable to listen on %s:%s: %s", bind_host, bind_port, exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
