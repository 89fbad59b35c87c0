from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator

from .errors import PersistenceFailure
from .models import DeploymentRecord, DeploymentSpec, ServiceRecord
from .settings import settings


TERMINAL_STATES = {"done", "withdrawn"}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (docker creates one when a
    bind-mounted file does not exist yet), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "cda.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def _tx() -> Iterator[sqlite3.Connection]:
    """One transaction. Any sqlite error surfaces as PersistenceFailure."""
    try:
        conn = connect()
    except (sqlite3.Error, OSError) as e:
        raise PersistenceFailure(f"cannot open state store: {e}") from e
    try:
        with conn:
            yield conn
    except sqlite3.Error as e:
        raise PersistenceFailure(f"state store error: {type(e).__name__}: {e}") from e
    finally:
        conn.close()


def init_db() -> None:
    """Create tables if they do not exist."""
    with _tx() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS deployments (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              spec_version TEXT NOT NULL,
              services_json TEXT NOT NULL,
              proxy_config_version INTEGER,
              result TEXT NOT NULL, -- success|rolledBack|failed
              detail TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS active_pointer (
              id INTEGER PRIMARY KEY CHECK (id = 1),
              record_id INTEGER,
              updated_at TEXT NOT NULL,
              FOREIGN KEY(record_id) REFERENCES deployments(id)
            );

            CREATE TABLE IF NOT EXISTS requests (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              spec_json TEXT NOT NULL,
              fingerprint TEXT NOT NULL,
              state TEXT NOT NULL, -- queued|<phase>|done|withdrawn
              record_id INTEGER,
              detail TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              FOREIGN KEY(record_id) REFERENCES deployments(id)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              request_id TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_requests_state ON requests(state);
            """
        )
        conn.execute(
            "INSERT OR IGNORE INTO active_pointer (id, record_id, updated_at) VALUES (1, NULL, ?)",
            (utc_now(),),
        )


def log_event(level: str, message: str, service_name: str | None = None, request_id: str | None = None) -> None:
    with _tx() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, request_id, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, request_id, message),
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with _tx() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


# -- deployment record log ---------------------------------------------------


def _row_to_record(row: sqlite3.Row) -> DeploymentRecord:
    services = {k: ServiceRecord(**v) for k, v in json.loads(row["services_json"]).items()}
    return DeploymentRecord(
        id=row["id"],
        spec_version=row["spec_version"],
        services=services,
        proxy_config_version=row["proxy_config_version"],
        result=row["result"],
        detail=row["detail"],
        timestamp=row["created_at"],
    )


def append_record(record: DeploymentRecord) -> DeploymentRecord:
    """Append a record to the log. Records are never updated afterwards."""
    ts = utc_now()
    with _tx() as conn:
        cur = conn.execute(
            """
            INSERT INTO deployments (spec_version, services_json, proxy_config_version, result, detail, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.spec_version,
                record.services_to_json(),
                record.proxy_config_version,
                record.result,
                record.detail,
                ts,
            ),
        )
        row = conn.execute("SELECT * FROM deployments WHERE id=?", (cur.lastrowid,)).fetchone()
        return _row_to_record(row)


def get_record(record_id: int) -> DeploymentRecord | None:
    with _tx() as conn:
        row = conn.execute("SELECT * FROM deployments WHERE id=?", (record_id,)).fetchone()
        return _row_to_record(row) if row else None


def list_records(limit: int = 50) -> list[DeploymentRecord]:
    with _tx() as conn:
        rows = conn.execute("SELECT * FROM deployments ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [_row_to_record(r) for r in rows]


def active_record_id() -> int | None:
    with _tx() as conn:
        row = conn.execute("SELECT record_id FROM active_pointer WHERE id=1").fetchone()
        return row["record_id"] if row else None


def get_active() -> DeploymentRecord | None:
    with _tx() as conn:
        row = conn.execute(
            """
            SELECT d.* FROM deployments d
            JOIN active_pointer p ON p.record_id = d.id
            WHERE p.id = 1
            """
        ).fetchone()
        return _row_to_record(row) if row else None


def swap_active(new_record_id: int, expected_record_id: int | None) -> None:
    """Move the active pointer, compare-and-set style.

    Fails if another writer moved the pointer since `expected_record_id`
    was read.
    """
    with _tx() as conn:
        cur = conn.execute(
            "UPDATE active_pointer SET record_id=?, updated_at=? WHERE id=1 AND record_id IS ?",
            (new_record_id, utc_now(), expected_record_id),
        )
        if cur.rowcount != 1:
            raise PersistenceFailure(
                f"active pointer moved concurrently (expected {expected_record_id}, wanted {new_record_id})"
            )


def commit_active(record: DeploymentRecord, expected_record_id: int | None) -> DeploymentRecord:
    """Append a record and make it active in one transaction."""
    ts = utc_now()
    with _tx() as conn:
        cur = conn.execute(
            """
            INSERT INTO deployments (spec_version, services_json, proxy_config_version, result, detail, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.spec_version,
                record.services_to_json(),
                record.proxy_config_version,
                record.result,
                record.detail,
                ts,
            ),
        )
        new_id = cur.lastrowid
        cur = conn.execute(
            "UPDATE active_pointer SET record_id=?, updated_at=? WHERE id=1 AND record_id IS ?",
            (new_id, ts, expected_record_id),
        )
        if cur.rowcount != 1:
            # Raising inside the transaction discards the INSERT as well.
            raise PersistenceFailure(f"active pointer moved concurrently (expected {expected_record_id})")
        row = conn.execute("SELECT * FROM deployments WHERE id=?", (new_id,)).fetchone()
        return _row_to_record(row)


# -- request queue -----------------------------------------------------------


@dataclass(frozen=True)
class RequestRow:
    seq: int
    id: str
    spec_json: str
    fingerprint: str
    state: str
    record_id: int | None
    detail: str
    created_at: str
    updated_at: str

    @property
    def spec(self) -> DeploymentSpec:
        return DeploymentSpec.from_dict(json.loads(self.spec_json))


def insert_request(spec: DeploymentSpec) -> RequestRow:
    now = utc_now()
    with _tx() as conn:
        conn.execute(
            """
            INSERT INTO requests (id, spec_json, fingerprint, state, created_at, updated_at)
            VALUES (?, ?, ?, 'queued', ?, ?)
            """,
            (spec.spec_version, json.dumps(spec.to_dict(), sort_keys=True), spec.fingerprint(), now, now),
        )
        row = conn.execute("SELECT * FROM requests WHERE id=?", (spec.spec_version,)).fetchone()
        return RequestRow(**dict(row))


def get_request(request_id: str) -> RequestRow | None:
    with _tx() as conn:
        row = conn.execute("SELECT * FROM requests WHERE id=?", (request_id,)).fetchone()
        return RequestRow(**dict(row)) if row else None


def list_requests(limit: int = 50) -> list[RequestRow]:
    with _tx() as conn:
        rows = conn.execute("SELECT * FROM requests ORDER BY seq DESC LIMIT ?", (limit,)).fetchall()
        return [RequestRow(**dict(r)) for r in rows]


def claim_next_request() -> RequestRow | None:
    """Take the oldest queued request and mark it as planning."""
    with _tx() as conn:
        row = conn.execute("SELECT * FROM requests WHERE state='queued' ORDER BY seq LIMIT 1").fetchone()
        if not row:
            return None
        cur = conn.execute(
            "UPDATE requests SET state='planning', updated_at=? WHERE seq=? AND state='queued'",
            (utc_now(), row["seq"]),
        )
        if cur.rowcount != 1:
            return None
        row = conn.execute("SELECT * FROM requests WHERE seq=?", (row["seq"],)).fetchone()
        return RequestRow(**dict(row))


def set_request_state(request_id: str, state: str) -> None:
    with _tx() as conn:
        conn.execute("UPDATE requests SET state=?, updated_at=? WHERE id=?", (state, utc_now(), request_id))


def conclude_request(request_id: str, record_id: int, detail: str = "") -> None:
    with _tx() as conn:
        conn.execute(
            "UPDATE requests SET state='done', record_id=?, detail=?, updated_at=? WHERE id=?",
            (record_id, detail, utc_now(), request_id),
        )


def withdraw_request(request_id: str) -> bool:
    """Withdraw a queued request. Returns False if it already left the queue."""
    with _tx() as conn:
        cur = conn.execute(
            "UPDATE requests SET state='withdrawn', updated_at=? WHERE id=? AND state='queued'",
            (utc_now(), request_id),
        )
        return cur.rowcount == 1


def pending_with_fingerprint(fingerprint: str) -> RequestRow | None:
    with _tx() as conn:
        row = conn.execute(
            "SELECT * FROM requests WHERE fingerprint=? AND state NOT IN ('done', 'withdrawn') ORDER BY seq LIMIT 1",
            (fingerprint,),
        ).fetchone()
        return RequestRow(**dict(row)) if row else None


def queue_length() -> int:
    with _tx() as conn:
        row = conn.execute("SELECT COUNT(*) AS n FROM requests WHERE state='queued'").fetchone()
        return int(row["n"])


def unfinished_requests() -> list[RequestRow]:
    """Requests a previous process claimed but never concluded."""
    with _tx() as conn:
        rows = conn.execute(
            "SELECT * FROM requests WHERE state NOT IN ('queued', 'done', 'withdrawn') ORDER BY seq"
        ).fetchall()
        return [RequestRow(**dict(r)) for r in rows]
