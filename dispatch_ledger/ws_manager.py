import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Set

from fastapi import WebSocket
from prometheus_client import Counter


logger = logging.getLogger("dispatch_ledger.notify")

PARTIES = ("rider", "driver", "franchise")

NOTIFICATIONS = Counter(
    "dispatch_notifications_total",
    "Real-time notifications pushed to party sessions",
    ["event", "result"],
)


class SessionWSManager:
    """Fan-out of named events to every socket a party has open."""

    def __init__(self) -> None:
        self._conns: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(party: str, party_id) -> str:
        return f"{party}:{party_id}"

    async def connect(self, party: str, party_id, ws: WebSocket):
        await ws.accept()
        async with self._lock:
            self._conns.setdefault(self._key(party, party_id), set()).add(ws)

    async def disconnect(self, party: str, party_id, ws: WebSocket):
        key = self._key(party, party_id)
        async with self._lock:
            conns = self._conns.get(key)
            if conns and ws in conns:
                conns.remove(ws)
            if conns is not None and not conns:
                self._conns.pop(key, None)

    def connection_count(self, party: str, party_id) -> int:
        return len(self._conns.get(self._key(party, party_id), ()))

    async def send(self, party: str, party_id, event: str, data: dict) -> int:
        """Best-effort delivery; returns how many sockets received the event."""
        key = self._key(party, party_id)
        message = {"event": event, "data": data, "ts": datetime.utcnow().isoformat() + "Z"}
        async with self._lock:
            conns = list(self._conns.get(key, set()))
        if not conns:
            NOTIFICATIONS.labels(event, "no_session").inc()
            return 0
        delivered = 0
        to_remove = []
        for ws in conns:
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception as exc:  # delivery must never fail the caller
                logger.warning("Dropping %s socket after failed %s delivery: %s", key, event, exc)
                to_remove.append(ws)
        if to_remove:
            async with self._lock:
                conns_set = self._conns.get(key)
                if conns_set:
                    for ws in to_remove:
                        conns_set.discard(ws)
                if conns_set is not None and not conns_set:
                    self._conns.pop(key, None)
        NOTIFICATIONS.labels(event, "delivered" if delivered else "failed").inc()
        return delivered


session_ws_manager = SessionWSManager()


@dataclass(frozen=True)
class Notification:
    party: str
    party_id: str
    event: str
    data: dict


def schedule(background_tasks, notifications) -> None:
    """Queue delivery to run after the response (and its transaction) completes."""
    for n in notifications:
        background_tasks.add_task(session_ws_manager.send, n.party, n.party_id, n.event, n.data)
