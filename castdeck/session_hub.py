"""Operator sessions: authentication, command dispatch and state fan-out.

Every frame sent to a client is ``{<type>: <payload>}``. Frames are queued per
session and written by that session's writer task, so broadcasting never waits
on a slow client and frames queued back-to-back (the initial-sync burst) reach
the client contiguously and in order.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Protocol

from .credentials import CredentialStore
from .json_store import PersistenceError
from .network_monitor import NetworkMonitor
from .pipelines import PipelineCatalog
from .processes import ProcessControl, ProcessError
from .stream_config import AppliedConfig, ConfigStore, ValidationError
from .supervisor import StreamSupervisor
from .tokens import TokenRegistry

OUTBOUND_QUEUE_SIZE = 128

DEVICE_COMMANDS: dict[str, list[str]] = {
    "poweroff": ["poweroff"],
    "reboot": ["reboot"],
}


class Transport(Protocol):
    async def send_str(self, data: str) -> None: ...


def build_message(msg_type: str, payload: Any) -> str:
    return json.dumps({msg_type: payload})


class Session:
    """One client connection."""

    def __init__(
        self,
        session_id: int,
        transport: Transport,
        *,
        max_queue_size: int = OUTBOUND_QUEUE_SIZE,
    ) -> None:
        self.id = session_id
        self.transport = transport
        self.authenticated = False
        self.token: str | None = None
        self.outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue_size)

    def __repr__(self) -> str:
        state = "authenticated" if self.authenticated else "unauthenticated"
        return f"<Session {self.id} {state}>"

    def send(self, msg_type: str, payload: Any) -> None:
        frame = build_message(msg_type, payload)
        try:
            self.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            try:
                self.outbox.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                self.outbox.put_nowait(frame)
            except asyncio.QueueFull:
                # Slow consumer; drop newest frame for this session.
                pass

    def send_error(self, message: str) -> None:
        self.send("error", {"msg": message})

    async def run_writer(self) -> None:
        while True:
            frame = await self.outbox.get()
            try:
                await self.transport.send_str(frame)
            except ConnectionResetError:
                return


class SessionHub:
    def __init__(
        self,
        *,
        credentials: CredentialStore,
        tokens: TokenRegistry,
        config_store: ConfigStore,
        pipelines: PipelineCatalog,
        supervisor: StreamSupervisor,
        network_monitor: NetworkMonitor,
        process_control: ProcessControl,
        logger: logging.Logger | None = None,
    ) -> None:
        self._credentials = credentials
        self._tokens = tokens
        self._config_store = config_store
        self._pipelines = pipelines
        self._supervisor = supervisor
        self._network_monitor = network_monitor
        self._process_control = process_control
        self._logger = logger or logging.getLogger("castdeck.sessions")
        self._sessions: dict[int, Session] = {}
        self._ids = itertools.count(1)
        self._handlers: dict[str, Callable[[Session, Any], Awaitable[None]]] = {
            "start": self._handle_start,
            "stop": self._handle_stop,
            "bitrate": self._handle_bitrate,
            "command": self._handle_command,
            "logout": self._handle_logout,
        }
        supervisor.add_listener(self._on_streaming_state)
        network_monitor.add_listener(self._on_netif)

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    @property
    def supervisor(self) -> StreamSupervisor:
        return self._supervisor

    @property
    def network_monitor(self) -> NetworkMonitor:
        return self._network_monitor

    def connect(self, transport: Transport) -> Session:
        session = Session(next(self._ids), transport)
        self._sessions[session.id] = session
        self._logger.info("Client %d connected (%d open)", session.id, len(self._sessions))
        return session

    def disconnect(self, session: Session) -> None:
        if self._sessions.pop(session.id, None) is not None:
            self._logger.info("Client %d disconnected (%d open)", session.id, len(self._sessions))
        session.authenticated = False
        session.token = None

    def is_connected(self, session: Session) -> bool:
        return self._sessions.get(session.id) is session

    def broadcast(
        self,
        msg_type: str,
        payload: Any,
        *,
        exclude: Session | None = None,
    ) -> int:
        """Queue a frame for every authenticated session except ``exclude``."""

        delivered = 0
        for session in list(self._sessions.values()):
            if session is exclude or not session.authenticated:
                continue
            session.send(msg_type, payload)
            delivered += 1
        return delivered

    async def handle_frame(self, session: Session, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as exc:
            self._logger.warning("Error parsing message from client %d: %s", session.id, exc)
            return
        if not isinstance(message, dict):
            self._logger.debug("Ignoring non-object message from client %d", session.id)
            return
        self._logger.debug("Client %d sent %s", session.id, ", ".join(map(str, message)))
        await self.handle_message(session, message)

    async def handle_message(self, session: Session, message: Mapping[str, Any]) -> None:
        if "auth" in message:
            await self._handle_auth(session, message["auth"])

        if not session.authenticated:
            return

        for msg_type, params in message.items():
            handler = self._handlers.get(msg_type)
            if handler is None:
                continue
            if not session.authenticated:
                # logged out earlier in this frame
                break
            await handler(session, params)

    def send_initial_status(self, session: Session) -> None:
        session.send("config", self._config_store.snapshot())
        session.send("pipelines", self._pipelines.display_list())
        session.send("status", self._supervisor.status_payload())
        session.send("netif", self._network_monitor.snapshot())

    async def _handle_auth(self, session: Session, params: Any) -> None:
        if not isinstance(params, Mapping):
            return
        password = params.get("password")
        token = params.get("token")
        if isinstance(password, str):
            verified = await self._credentials.verify(password)
            if not verified:
                self._logger.warning("Rejected password login from client %d", session.id)
                session.send_error("Invalid password")
                return
            if not self.is_connected(session):
                return
            try:
                issued = self._tokens.issue(bool(params.get("persistent_token")))
            except PersistenceError as exc:
                self._logger.error("Unable to store persistent token: %s", exc)
                session.send_error("Unable to store login token")
                return
            self._authenticate(session, issued.value, send_token=True)
        elif isinstance(token, str):
            if not self._tokens.validate(token):
                self._logger.info("Rejected token login from client %d", session.id)
                session.send("auth", {"success": False})
                return
            self._authenticate(session, token, send_token=False)

    def _authenticate(self, session: Session, token: str, *, send_token: bool) -> None:
        session.authenticated = True
        session.token = token
        result: dict[str, Any] = {"success": True}
        if send_token:
            result["auth_token"] = token
        session.send("auth", result)
        self.send_initial_status(session)
        self._logger.info("Client %d authenticated", session.id)

    async def _handle_start(self, session: Session, params: Any) -> None:
        if not isinstance(params, Mapping):
            params = {}

        def _announce(applied: AppliedConfig) -> None:
            self.broadcast("config", applied.config.to_payload(), exclude=session)

        try:
            await self._supervisor.start(params, on_applied=_announce)
        except ValidationError as exc:
            self._start_error(session, str(exc))
        except ProcessError as exc:
            self._logger.error("Unable to start streaming: %s", exc)
            self._start_error(session, str(exc))
        except PersistenceError as exc:
            self._logger.error("Unable to save configuration: %s", exc)
            self._start_error(session, str(exc))

    def _start_error(self, session: Session, message: str) -> None:
        session.send_error(message)
        session.send("status", self._supervisor.status_payload())

    async def _handle_stop(self, session: Session, _params: Any) -> None:
        try:
            await self._supervisor.stop()
        except ProcessError as exc:
            session.send_error(str(exc))

    async def _handle_bitrate(self, session: Session, params: Any) -> None:
        if not isinstance(params, Mapping):
            return

        def _announce(rates: tuple[Any, Any]) -> None:
            min_br, max_br = rates
            self.broadcast("bitrate", {"min_br": min_br, "max_br": max_br}, exclude=session)

        try:
            await self._supervisor.update_bitrate(params, on_committed=_announce)
        except ValidationError as exc:
            session.send_error(str(exc))
        except (PersistenceError, ProcessError) as exc:
            self._logger.error("Unable to update bitrate: %s", exc)
            session.send_error(str(exc))

    async def _handle_command(self, session: Session, command: Any) -> None:
        argv = DEVICE_COMMANDS.get(command) if isinstance(command, str) else None
        if argv is None:
            session.send_error(f"unknown command {command}")
            return
        self._logger.warning("Client %d requested %s", session.id, command)
        try:
            await self._process_control.spawn(argv, detached=True)
        except ProcessError as exc:
            self._logger.error("Unable to run %s: %s", command, exc)
            session.send_error(str(exc))

    async def _handle_logout(self, session: Session, _params: Any) -> None:
        token = session.token
        session.authenticated = False
        session.token = None
        self._logger.info("Client %d logged out", session.id)
        if not token:
            return
        try:
            self._tokens.revoke(token)
        except PersistenceError as exc:
            self._logger.error("Unable to revoke token: %s", exc)
            session.send_error("Logged out, but the saved login could not be removed")

    def _on_streaming_state(self, running: bool) -> None:
        self.broadcast("status", {"is_streaming": running})

    def _on_netif(self, interfaces: dict[str, dict[str, Any]]) -> None:
        self.broadcast("netif", interfaces)


__all__ = ["Session", "SessionHub", "build_message", "DEVICE_COMMANDS"]
