from __future__ import annotations

import json
import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

BROADCAST = "*"


class ProgressSink(ABC):
    """Receives download progress. Delivery is fire-and-forget.

    Implementations must not raise for unknown or disconnected targets."""

    @abstractmethod
    def on_progress(self, target: str, current: int, total: int) -> None:
        """Report that `current` of `total` items are done."""

    @abstractmethod
    def on_error(self, target: str, message: str) -> None:
        """Report a failure message."""

    @abstractmethod
    def on_complete(self, target: str, total: int) -> None:
        """Report that the whole download finished."""


class NullProgressSink(ProgressSink):
    def on_progress(self, target: str, current: int, total: int) -> None:
        pass

    def on_error(self, target: str, message: str) -> None:
        pass

    def on_complete(self, target: str, total: int) -> None:
        pass


class LogProgressSink(ProgressSink):
    """Writes progress to the log; used by the command line."""

    def on_progress(self, target: str, current: int, total: int) -> None:
        pct = (current / total * 100) if total else 100.0
        logger.info("progress %d/%d (%.2f%%)", current, total, pct)

    def on_error(self, target: str, message: str) -> None:
        logger.error("download error: %s", message)

    def on_complete(self, target: str, total: int) -> None:
        logger.info("download complete, %d chapter(s)", total)


class ChannelProgressSink(ProgressSink):
    """Per-client bounded queues of JSON progress messages.

    A push transport (SSE, websocket) drains a client's queue with get().
    When a queue is full, or the client is not connected, the message is
    dropped. Target "*" broadcasts to every connected client.
    """

    def __init__(self, maxsize: int = 50) -> None:
        self._maxsize = maxsize
        self._lock = threading.Lock()
        self._clients: Dict[str, "queue.Queue[str]"] = {}

    def connect(self, client_id: str) -> "queue.Queue[str]":
        q: "queue.Queue[str]" = queue.Queue(maxsize=self._maxsize)
        with self._lock:
            self._clients[client_id] = q
        self._offer(q, json.dumps({"type": "connected", "message": "connected", "clientId": client_id}))
        return q

    def disconnect(self, client_id: str) -> None:
        with self._lock:
            self._clients.pop(client_id, None)

    def clients(self) -> List[str]:
        with self._lock:
            return list(self._clients)

    def get(self, client_id: str, timeout: Optional[float] = None) -> Optional[str]:
        """Next message for a client, or None if nothing arrives in time."""
        with self._lock:
            q = self._clients.get(client_id)
        if q is None:
            return None
        try:
            return q.get(timeout=timeout) if timeout else q.get_nowait()
        except queue.Empty:
            return None

    def broadcast(self, message: Dict) -> None:
        self._push(BROADCAST, message)

    def on_progress(self, target: str, current: int, total: int) -> None:
        self._push(target, {"type": "book-download", "index": current, "total": total})

    def on_error(self, target: str, message: str) -> None:
        self._push(target, {"type": "book-download-error", "message": message})

    def on_complete(self, target: str, total: int) -> None:
        self._push(target, {"type": "book-download-complete", "total": total})

    def _push(self, target: str, message: Dict) -> None:
        payload = json.dumps(message, ensure_ascii=False)
        with self._lock:
            if target == BROADCAST:
                targets = list(self._clients.values())
            else:
                q = self._clients.get(target)
                targets = [q] if q is not None else []
        for q in targets:
            self._offer(q, payload)

    @staticmethod
    def _offer(q: "queue.Queue[str]", payload: str) -> None:
        try:
            q.put_nowait(payload)
        except queue.Full:
            pass
