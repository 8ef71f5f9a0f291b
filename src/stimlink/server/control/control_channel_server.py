"""WebSocket control channel that device apps connect and bind to.

The server owns one controller identity of its own. Every socket that
connects gets a fresh identity and a ``bind`` prompt carrying it; an app then
binds itself to the controller by echoing both identities back. Only the
server mutates connection and binding state; the orchestrator reads it
through the :class:`~stimlink.server.control.transport.Transport` surface.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from stimlink.protocol.messages import (
    BIND_REQUEST,
    BIND_TYPE,
    CODE_ALREADY_BOUND,
    CODE_NOT_JSON,
    CODE_NO_RECIPIENT,
    CODE_NOT_PAIRED,
    CODE_OK,
    CODE_SERVER_ERROR,
    CODE_TOO_LONG,
    CODE_UNKNOWN_TARGET,
    HEARTBEAT_TYPE,
    MAX_MESSAGE_LENGTH,
    MSG_TYPE,
    ControlFrame,
    build_bind_prompt,
    build_bind_reply,
    build_break,
    build_command,
    build_error,
    build_heartbeat,
)
from stimlink.server.control.events import TransportEvent, TransportEventCallback, TransportEventKind
from stimlink.server.control.transport import Channel, StartupError, StimCommand, render_command
from stimlink.server.util.websocket import safe_send

logger = logging.getLogger(__name__)


# ---- Network helpers -----------------------------------------------------------

def is_port_available(host: str, port: int) -> bool:
    bind_host = "" if host in ("0.0.0.0", "") else host
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((bind_host, int(port)))
        except OSError:
            return False
    return True


def find_available_port(host: str, start: int, end: int) -> Optional[int]:
    for port in range(int(start), int(end) + 1):
        if is_port_available(host, port):
            return port
    return None


def local_ip_address() -> Optional[str]:
    """LAN address of the default route; connecting a UDP socket sends nothing."""

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("8.8.8.8", 80))
            return str(sock.getsockname()[0])
        except OSError:
            return None


def connection_url(host: str, port: int, controller_id: str) -> str:
    return f"ws://{host}:{int(port)}/{controller_id}"


def _request_path(ws: Any) -> str:
    request = getattr(ws, "request", None)
    path = getattr(request, "path", None) or getattr(ws, "path", None)
    return str(path or "")


def _remote_address(ws: Any) -> Optional[str]:
    addr = getattr(ws, "remote_address", None)
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return None


# ---- Registry ------------------------------------------------------------------

@dataclass
class ClientRecord:
    client_id: str
    ws: Any
    address: Optional[str] = None
    connected_at: float = field(default_factory=time.time)


class ClientRegistry:
    """Connected sockets and the controller -> endpoint bindings."""

    def __init__(self) -> None:
        self._clients: dict[str, ClientRecord] = {}
        self._bindings: dict[str, set[str]] = {}
        self._owner: dict[str, str] = {}

    def add(self, record: ClientRecord) -> None:
        self._clients[record.client_id] = record

    def get(self, client_id: str) -> Optional[ClientRecord]:
        return self._clients.get(client_id)

    def remove(self, client_id: str) -> Optional[str]:
        """Drop ``client_id`` and its binding; return the controller it was bound to."""

        self._clients.pop(client_id, None)
        controller_id = self._owner.pop(client_id, None)
        if controller_id is not None:
            bound = self._bindings.get(controller_id)
            if bound is not None:
                bound.discard(client_id)
                if not bound:
                    self._bindings.pop(controller_id, None)
        return controller_id

    def bind(self, controller_id: str, endpoint_id: str) -> str:
        if endpoint_id not in self._clients:
            return CODE_UNKNOWN_TARGET
        if endpoint_id in self._owner:
            return CODE_ALREADY_BOUND
        self._owner[endpoint_id] = controller_id
        self._bindings.setdefault(controller_id, set()).add(endpoint_id)
        return CODE_OK

    def owner_of(self, endpoint_id: str) -> Optional[str]:
        return self._owner.get(endpoint_id)

    def connected(self) -> frozenset[str]:
        return frozenset(self._clients)

    def bound_to(self, controller_id: str) -> frozenset[str]:
        return frozenset(self._bindings.get(controller_id, ()))

    def records(self) -> list[ClientRecord]:
        return list(self._clients.values())

    def __len__(self) -> int:
        return len(self._clients)


# ---- Server --------------------------------------------------------------------

class ControlChannelServer:
    """Reference :class:`Transport` over ``websockets``."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        *,
        heartbeat_s: float = 60.0,
        send_timeout_s: float = 5.0,
        log_bindings: bool = False,
    ) -> None:
        self.host = host
        self.registry = ClientRegistry()
        self._heartbeat_s = float(heartbeat_s)
        self._send_timeout_s = float(send_timeout_s)
        self._log_bindings = log_bindings
        self._controller_id: Optional[str] = None
        self._port: Optional[int] = None
        self._server: Any = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._callback: Optional[TransportEventCallback] = None

    # --- Transport surface --------------------------------------------------

    @property
    def controller_id(self) -> Optional[str]:
        return self._controller_id

    @property
    def port(self) -> Optional[int]:
        return self._port

    def set_event_callback(self, callback: Optional[TransportEventCallback]) -> None:
        self._callback = callback

    async def start_listening(self, port: int) -> str:
        if self._server is not None:
            raise StartupError("control channel already listening")
        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self.host,
                int(port),
                compression=None,
            )
        except OSError as exc:
            raise StartupError(f"cannot listen on {self.host}:{port}: {exc}") from exc
        self._port = int(port)
        self._controller_id = str(uuid.uuid4())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="stimlink-heartbeat")
        logger.info("control channel listening on %s:%d controller=%s", self.host, self._port, self._controller_id)
        return self._controller_id

    async def stop_listening(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        server, self._server = self._server, None
        if server is None:
            return
        controller_id = self._controller_id
        for record in self.registry.records():
            if controller_id is not None and self.registry.owner_of(record.client_id) == controller_id:
                await safe_send(record.ws, build_break(controller_id, record.client_id).to_json(), timeout=self._send_timeout_s)
            with suppress(Exception):
                await record.ws.close()
        server.close()
        await server.wait_closed()
        logger.info("control channel on port %s closed", self._port)

    async def send_to(self, endpoint_id: str, channel: Channel, command: StimCommand) -> bool:
        controller_id = self._controller_id
        record = self.registry.get(endpoint_id)
        if controller_id is None or record is None:
            return False
        if self.registry.owner_of(endpoint_id) != controller_id:
            return False
        try:
            message = render_command(Channel(channel), command)
        except ValueError:
            logger.warning("cannot render %s for channel %s", command.kind.value, channel, exc_info=True)
            return False
        if len(message) > MAX_MESSAGE_LENGTH:
            logger.warning("command for %s exceeds %d characters; not sent", endpoint_id[:8], MAX_MESSAGE_LENGTH)
            return False
        frame = build_command(controller_id, endpoint_id, message)
        return await safe_send(record.ws, frame.to_json(), timeout=self._send_timeout_s)

    def list_connected_endpoints(self) -> frozenset[str]:
        return self.registry.connected()

    def list_bound_endpoints(self, controller_id: str) -> frozenset[str]:
        return self.registry.bound_to(controller_id)

    def active_connection_count(self) -> int:
        return len(self.registry)

    # --- Connection handling ------------------------------------------------

    async def _handle_connection(self, ws: Any) -> None:
        client_id = str(uuid.uuid4())
        address = _remote_address(ws)
        path = _request_path(ws).strip("/")
        if path and path != self._controller_id:
            logger.warning("client %s connected with unknown controller path %r", client_id[:8], path)
        self.registry.add(ClientRecord(client_id=client_id, ws=ws, address=address))
        self._emit(TransportEvent(TransportEventKind.CONNECTED, endpoint_id=client_id, address=address))
        try:
            await safe_send(ws, build_bind_prompt(client_id).to_json())
            async for raw in ws:
                await self._handle_frame(client_id, ws, raw)
        except ConnectionClosed:
            pass
        except Exception as exc:
            logger.error("client %s handler failed", client_id[:8], exc_info=True)
            await safe_send(ws, build_error(client_id, CODE_SERVER_ERROR).to_json(), timeout=self._send_timeout_s)
            self._emit(TransportEvent(TransportEventKind.ENDPOINT_ERROR, endpoint_id=client_id, detail=str(exc)))
        finally:
            self.registry.remove(client_id)
            self._emit(TransportEvent(TransportEventKind.DISCONNECTED, endpoint_id=client_id, address=address))

    async def _handle_frame(self, client_id: str, ws: Any, raw: Any) -> None:
        text = raw.decode("utf-8", "replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
        if len(text) > MAX_MESSAGE_LENGTH:
            await safe_send(ws, build_error(client_id, CODE_TOO_LONG).to_json())
            return
        try:
            frame = ControlFrame.from_json(text)
        except ValueError:
            await safe_send(ws, build_error(client_id, CODE_NOT_JSON).to_json())
            return

        if frame.type == BIND_TYPE:
            await self._handle_bind(client_id, ws, frame)
        elif frame.type == HEARTBEAT_TYPE:
            return
        elif frame.type == MSG_TYPE:
            if self.registry.owner_of(client_id) is None:
                await safe_send(ws, build_error(client_id, CODE_NOT_PAIRED).to_json())
                return
            if frame.client_id != self._controller_id:
                await safe_send(ws, build_error(client_id, CODE_NO_RECIPIENT, frame.client_id).to_json())
                return
            logger.debug("app %s feedback: %s", client_id[:8], frame.message)
        else:
            logger.debug("ignoring %s frame from %s", frame.type, client_id[:8])

    async def _handle_bind(self, client_id: str, ws: Any, frame: ControlFrame) -> None:
        controller_id = self._controller_id
        if frame.message != BIND_REQUEST:
            return
        if frame.target_id != client_id or frame.client_id != controller_id or controller_id is None:
            code = CODE_UNKNOWN_TARGET
        else:
            code = self.registry.bind(controller_id, client_id)
        await safe_send(ws, build_bind_reply(frame.client_id, frame.target_id, code).to_json())
        if code == CODE_OK:
            if self._log_bindings:
                logger.info("bind succeeded endpoint=%s", client_id[:8])
            self._emit(TransportEvent(TransportEventKind.BIND_SUCCEEDED, endpoint_id=client_id))
        else:
            self._emit(TransportEvent(TransportEventKind.BIND_FAILED, endpoint_id=client_id, detail=f"code {code}"))

    async def _heartbeat_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._heartbeat_s)
                for record in self.registry.records():
                    ok = await safe_send(
                        record.ws,
                        build_heartbeat(record.client_id).to_json(),
                        timeout=self._send_timeout_s,
                    )
                    if not ok:
                        self._emit(
                            TransportEvent(
                                TransportEventKind.ENDPOINT_ERROR,
                                endpoint_id=record.client_id,
                                detail="heartbeat send failed",
                            )
                        )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("heartbeat loop failed")
            self._emit(TransportEvent(TransportEventKind.CHANNEL_ERROR, detail=f"heartbeat loop failed: {exc}"))

    def _emit(self, event: TransportEvent) -> None:
        callback = self._callback
        if callback is None:
            return
        try:
            callback(event)
        except Exception:
            logger.debug("transport event callback failed", exc_info=True)


__all__ = [
    "ClientRecord",
    "ClientRegistry",
    "ControlChannelServer",
    "connection_url",
    "find_available_port",
    "is_port_available",
    "local_ip_address",
]
