from __future__ import annotations

from threading import Lock
from typing import Any

from .db import utc_now


PHASE_IDLE = "idle"
PHASE_PLANNING = "planning"
PHASE_PULLING = "pulling"
PHASE_STARTING = "starting"
PHASE_HEALTH_CHECKING = "health_checking"
PHASE_SWITCHING = "switching"
PHASE_FINALIZING = "finalizing"
PHASE_ROLLING_BACK = "rolling_back"


class RuntimeState:
    """In-memory view of the agent for status queries.

    Durable state lives in the store; this only carries what the worker is
    doing right now plus counters since process start.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.phase = PHASE_IDLE
        self.request_id: str | None = None
        self.phase_since = utc_now()
        self.worker_alive = False
        self.fatal_error: str | None = None
        self.counters: dict[str, int] = {
            "submitted": 0,
            "rejected": 0,
            "withdrawn": 0,
            "succeeded": 0,
            "rolled_back": 0,
            "failed": 0,
            "container_starts": 0,
            "container_stops": 0,
            "proxy_applies": 0,
        }

    def set_phase(self, phase: str, request_id: str | None = None) -> None:
        with self.lock:
            self.phase = phase
            self.request_id = request_id if phase != PHASE_IDLE else None
            self.phase_since = utc_now()

    def incr(self, counter: str, n: int = 1) -> None:
        with self.lock:
            self.counters[counter] = self.counters.get(counter, 0) + n

    def mark_fatal(self, message: str) -> None:
        with self.lock:
            self.fatal_error = message

    def set_worker_alive(self, alive: bool) -> None:
        with self.lock:
            self.worker_alive = alive

    def accepting(self) -> bool:
        with self.lock:
            return self.worker_alive and self.fatal_error is None

    def snapshot(self) -> dict[str, Any]:
        with self.lock:
            return {
                "phase": self.phase,
                "request_id": self.request_id,
                "phase_since": self.phase_since,
                "worker_alive": self.worker_alive,
                "fatal_error": self.fatal_error,
                "counters": dict(self.counters),
            }
