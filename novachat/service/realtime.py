from __future__ import annotations

import asyncio
import json
import threading
import uuid
from typing import Any, Dict, List, Optional, Protocol

from novachat.logging import get_logger

logger = get_logger(__name__)

SESSION_REVOKED = "SESSION_REVOKED"
ONLINE_USERS = "online_users"
# application close code for "credential no longer valid"
REVOKED_CLOSE_CODE = 4401


class ConnectionHandle(Protocol):
    connection_id: str
    session_id: str

    async def send_event(self, event: str, data: Any = None) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class WebSocketConnection:
    """Adapts a Starlette/FastAPI WebSocket to the handle the notifier pushes to."""

    def __init__(self, websocket, user_id: str, session_id: str) -> None:
        self.websocket = websocket
        self.user_id = user_id
        self.session_id = session_id
        self.connection_id = uuid.uuid4().hex
        self.closed = False

    async def send_event(self, event: str, data: Any = None) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    async def close(self, code: int = 1000) -> None:
        if self.closed:
            return
        self.closed = True
        await self.websocket.close(code=code)

    def __repr__(self) -> str:
        return f"WebSocketConnection(user_id={self.user_id!r}, id={self.connection_id!r})"


class ConnectionDirectory(Protocol):
    def register(self, user_id: str, handle: ConnectionHandle) -> Optional[ConnectionHandle]: ...

    def unregister(
        self, user_id: str, handle: Optional[ConnectionHandle] = None
    ) -> bool: ...

    def lookup(self, user_id: str) -> Optional[ConnectionHandle]: ...

    def online_user_ids(self) -> List[str]: ...

    def handles(self) -> List[ConnectionHandle]: ...


class LocalConnectionDirectory:
    """Process-local user -> live connection map.

    One handle per user; registering again replaces the previous handle.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, ConnectionHandle] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, handle: ConnectionHandle) -> Optional[ConnectionHandle]:
        with self._lock:
            previous = self._connections.get(user_id)
            self._connections[user_id] = handle
        if previous is not None and previous is not handle:
            logger.info(
                "connection_replaced",
                user_id=user_id,
                previous=previous.connection_id,
                current=handle.connection_id,
            )
        return previous

    def unregister(
        self, user_id: str, handle: Optional[ConnectionHandle] = None
    ) -> bool:
        """Drop the entry; with ``handle`` only when it is still the registered one."""
        with self._lock:
            current = self._connections.get(user_id)
            if current is None:
                return False
            if handle is not None and current is not handle:
                return False
            del self._connections[user_id]
            return True

    def lookup(self, user_id: str) -> Optional[ConnectionHandle]:
        with self._lock:
            return self._connections.get(user_id)

    def online_user_ids(self) -> List[str]:
        with self._lock:
            return list(self._connections.keys())

    def handles(self) -> List[ConnectionHandle]:
        with self._lock:
            return list(self._connections.values())


async def broadcast_online_users(directory: ConnectionDirectory) -> None:
    """Push the current roster to every registered connection."""
    roster = directory.online_user_ids()
    for handle in directory.handles():
        try:
            await handle.send_event(ONLINE_USERS, roster)
        except Exception as exc:
            logger.warning(
                "roster_send_failed",
                connection_id=handle.connection_id,
                error=str(exc),
            )


class RevocationNotifier:
    """Tells a superseded live connection that its session ended."""

    def __init__(
        self,
        directory: ConnectionDirectory,
        *,
        force_close: bool = True,
        bus: Optional["RevocationBus"] = None,
    ) -> None:
        self.directory = directory
        self.force_close = force_close
        self.bus = bus

    async def notify(
        self,
        user_id: str,
        reason: str = "ANOTHER_SESSION",
        message: str = "Logged in from another device",
        *,
        broadcast: bool = True,
        keep_session_id: Optional[str] = None,
    ) -> bool:
        """Deliver ``SESSION_REVOKED`` to the user's local connection, if any.

        A connection bound to ``keep_session_id`` is left alone. Returns
        whether a local connection was targeted. Delivery problems are logged
        and swallowed; the caller's login must not fail.
        """
        if broadcast and self.bus is not None:
            await self.bus.publish(user_id, reason, message, keep_session_id=keep_session_id)

        handle = self.directory.lookup(user_id)
        if handle is None:
            return False
        if keep_session_id is not None and getattr(handle, "session_id", None) == keep_session_id:
            return False
        self.directory.unregister(user_id, handle)
        try:
            await handle.send_event(
                SESSION_REVOKED, {"reason": reason, "message": message}
            )
        except Exception as exc:
            logger.warning(
                "revocation_send_failed",
                user_id=user_id,
                connection_id=handle.connection_id,
                error=str(exc),
            )
        else:
            logger.info(
                "revocation_sent",
                user_id=user_id,
                connection_id=handle.connection_id,
                reason=reason,
            )
        if self.force_close:
            try:
                await handle.close(REVOKED_CLOSE_CODE)
            except Exception as exc:
                logger.warning(
                    "revocation_close_failed",
                    user_id=user_id,
                    connection_id=handle.connection_id,
                    error=str(exc),
                )
        return True


class RevocationBus:
    """Redis pub/sub fan-out so every instance reaches the connections it hosts."""

    def __init__(self, cache, channel: str, *, instance_id: Optional[str] = None) -> None:
        self.cache = cache
        self.channel = channel
        self.instance_id = instance_id or uuid.uuid4().hex
        self._task: Optional[asyncio.Task] = None
        self._pubsub = None

    async def publish(
        self,
        user_id: str,
        reason: str,
        message: str,
        *,
        keep_session_id: Optional[str] = None,
    ) -> None:
        payload = {
            "user_id": user_id,
            "reason": reason,
            "message": message,
            "keep_session_id": keep_session_id,
            "origin": self.instance_id,
        }
        try:
            await self.cache.publish(self.channel, json.dumps(payload))
        except Exception as exc:
            logger.warning(
                "revocation_publish_failed",
                user_id=user_id,
                channel=self.channel,
                error=str(exc),
            )

    async def handle_message(self, raw: Any, notifier: RevocationNotifier) -> bool:
        """Apply one bus message locally; returns whether a connection was targeted."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("revocation_message_invalid", channel=self.channel)
            return False
        if not isinstance(data, dict) or not data.get("user_id"):
            return False
        if data.get("origin") == self.instance_id:
            return False
        return await notifier.notify(
            str(data["user_id"]),
            reason=data.get("reason") or "ANOTHER_SESSION",
            message=data.get("message") or "Logged in from another device",
            broadcast=False,
            keep_session_id=data.get("keep_session_id"),
        )

    async def start(self, notifier: RevocationNotifier) -> None:
        if self._task is not None:
            return
        self._pubsub = self.cache.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._listen(notifier))
        logger.info(
            "revocation_bus_started", channel=self.channel, instance_id=self.instance_id
        )

    async def _listen(self, notifier: RevocationNotifier) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                await self.handle_message(message.get("data"), notifier)
            except Exception as exc:
                logger.error("revocation_bus_dispatch_failed", error=str(exc))

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.close()
            self._pubsub = None
