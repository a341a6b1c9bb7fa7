# Overview: Live status broadcaster: registry of open push channels and SSE fan-out.

from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator

from flask import current_app

from kiosk.time_utils import utcnow, to_utc_z
"""
Broadcaster lifecycle

- One registry per process, created with the app and torn down on shutdown.
- register_client sends the full current state before returning, so a new
  dashboard never starts stale. Deltas broadcast while that state is being
  built are held back and delivered right after it, never before.
- broadcast iterates over a copy of the registry and sends outside the
  registry lock. A client whose send raises is removed right away; others
  are unaffected.
- The registry holds nothing for a closed connection: the SSE generator
  removes its client in `finally`, and a failed send removes it too.
"""

EVENT_INVENTORY_INIT = "inventory:init"
EVENT_INVENTORY_UPDATE = "inventory:update"
EVENT_INVENTORY_TRACKING = "inventory:tracking"
EVENT_STATUS_INIT = "status:init"
EVENT_STATUS_UPDATE = "status:update"

_CLOSE = object()


class ChannelClosedError(Exception):
    """Send to a channel whose consumer is gone or hopelessly behind."""


class QueueChannel:
    """
    Bounded per-client outbox drained by the streaming response.

    A full queue means the consumer stopped reading; the channel closes
    rather than buffering without limit.
    """

    def __init__(self, maxsize: int = 256):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, event_type: str, data) -> None:
        if self._closed.is_set():
            raise ChannelClosedError("channel closed")
        try:
            self._queue.put_nowait((event_type, data))
        except queue.Full:
            self.close()
            raise ChannelClosedError("client outbox full")

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._queue.put_nowait(_CLOSE)
        except queue.Full:
            # Reader sees the closed flag on its next keep-alive timeout
            pass

    def get(self, timeout: float | None = None):
        """Next (event_type, data), None on timeout. Raises once closed."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            if self._closed.is_set():
                raise ChannelClosedError("channel closed")
            return None
        if item is _CLOSE:
            raise ChannelClosedError("channel closed")
        return item


@dataclass
class BroadcastClient:
    client_id: str
    channel: object
    registered_at: datetime
    admin_id: str | None = None
    # Deltas waiting for the init snapshot; None once the client is live
    backlog: list | None = None

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "registered_at": to_utc_z(self.registered_at),
            "admin_id": self.admin_id,
        }


class LiveStatusBroadcaster:
    def __init__(
        self,
        snapshot_provider: Callable[[], dict] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._lock = threading.Lock()
        self._clients: dict[str, BroadcastClient] = {}
        self._snapshot_provider = snapshot_provider
        self.logger = logger or logging.getLogger("kiosk.broadcaster")

    def register_client(self, channel, admin_id: str | None = None) -> str:
        """
        Add a channel and push the full current state to it immediately.

        The client is registered before the snapshot is taken so no delta
        committed in between is lost. Such deltas queue in the client's
        backlog and are replayed after the snapshot; they carry absolute
        balances, so replaying one the snapshot already reflects is harmless.
        """
        client = BroadcastClient(
            client_id=uuid.uuid4().hex,
            channel=channel,
            registered_at=utcnow(),
            admin_id=admin_id,
            backlog=[],
        )
        with self._lock:
            self._clients[client.client_id] = client

        try:
            if self._snapshot_provider is not None:
                channel.send(EVENT_INVENTORY_INIT, self._snapshot_provider())
            self._flush_backlog(client)
        except Exception:
            self.remove_client(client.client_id)
            raise

        self.logger.info(
            "Broadcast client %s registered (%s open)",
            client.client_id,
            self.client_count(),
            extra={"client_id": client.client_id, "admin_id": admin_id},
        )
        return client.client_id

    def _flush_backlog(self, client: BroadcastClient) -> None:
        while True:
            with self._lock:
                pending = client.backlog
                if not pending:
                    client.backlog = None
                    return
                client.backlog = []
            for event_type, data in pending:
                client.channel.send(event_type, data)

    def remove_client(self, client_id: str) -> bool:
        with self._lock:
            client = self._clients.pop(client_id, None)
        if client is None:
            return False
        close = getattr(client.channel, "close", None)
        if close is not None:
            close()
        self.logger.info(
            "Broadcast client %s removed (%s open)",
            client_id,
            self.client_count(),
            extra={"client_id": client_id},
        )
        return True

    def broadcast(self, event_type: str, data) -> int:
        """Send to every client; returns how many sends succeeded or were queued."""
        delivered = 0
        with self._lock:
            clients = []
            for client in self._clients.values():
                if client.backlog is not None:
                    client.backlog.append((event_type, data))
                    delivered += 1
                else:
                    clients.append(client)


        dead: list[str] = []
        for client in clients:
            try:
                client.channel.send(event_type, data)
                delivered += 1
            except Exception as exc:
                self.logger.warning(
                    "Dropping broadcast client %s after failed %s send: %s",
                    client.client_id,
                    event_type,
                    exc,
                    extra={"client_id": client.client_id},
                )
                dead.append(client.client_id)

        for client_id in dead:
            self.remove_client(client_id)
        return delivered

    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def has_clients(self) -> bool:
        return self.client_count() > 0

    def list_clients(self) -> list[BroadcastClient]:
        with self._lock:
            return list(self._clients.values())

    def shutdown(self) -> None:
        with self._lock:
            client_ids = list(self._clients)
        for client_id in client_ids:
            self.remove_client(client_id)


def get_broadcaster(app=None) -> LiveStatusBroadcaster | None:
    app = app or current_app
    return app.extensions.get("kiosk_broadcaster")


def format_sse(event_type: str, data) -> str:
    payload = json.dumps(data, separators=(",", ":"), default=str)
    return f"event: {event_type}\ndata: {payload}\n\n"


def stream_events(
    broadcaster: LiveStatusBroadcaster,
    client_id: str,
    channel: QueueChannel,
    keepalive_seconds: float = 15,
) -> Iterator[str]:
    """
    SSE body generator for one client.

    Emits a comment line when idle so proxies keep the connection open and
    a dead peer is detected on the next write.
    """
    try:
        yield "retry: 5000\n\n"
        while True:
            try:
                item = channel.get(timeout=keepalive_seconds)
            except ChannelClosedError:
                break
            if item is None:
                yield ": keep-alive\n\n"
                continue
            event_type, data = item
            yield format_sse(event_type, data)
    finally:
        broadcaster.remove_client(client_id)


def on_balance_changed(event) -> None:
    """Event handler: push every committed balance change to open dashboards."""
    broadcaster = get_broadcaster()
    if broadcaster is None or not broadcaster.has_clients():
        return
    broadcaster.broadcast(EVENT_INVENTORY_UPDATE, event.to_dict())
