from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from .settings import settings


logger = logging.getLogger("tsr")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  namespace TEXT NOT NULL,
  command TEXT NOT NULL,
  status TEXT NOT NULL, -- running|ok|failed
  summary TEXT,
  started_at TEXT NOT NULL,
  finished_at TEXT
);

CREATE TABLE IF NOT EXISTS events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  level TEXT NOT NULL,
  namespace TEXT,
  service_name TEXT,
  message TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
CREATE INDEX IF NOT EXISTS idx_runs_namespace ON runs(namespace);
"""

_initialized: set[str] = set()


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a bind-mounted
    file is missing), the journal lives inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "tsr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    path = _resolve_db_path()
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if path not in _initialized:
        conn.executescript(_SCHEMA)
        _initialized.add(path)
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(_SCHEMA)


def log_event(level: str, message: str, service_name: str | None = None, namespace: str | None = None) -> None:
    level = level.upper()
    prefix = "/".join(x for x in (namespace, service_name) if x)
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", f"[{prefix}] " if prefix else "", message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, namespace, service_name, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, namespace, service_name, message),
        )


@dataclass(frozen=True)
class EventRow:
    id: int
    ts: str
    level: str
    namespace: str | None
    service_name: str | None
    message: str


@dataclass(frozen=True)
class RunRow:
    id: int
    namespace: str
    command: str
    status: str
    summary: str | None
    started_at: str
    finished_at: str | None


def list_events(limit: int = 50, namespace: str | None = None) -> list[EventRow]:
    sql = "SELECT id, ts, level, namespace, service_name, message FROM events"
    args: list[object] = []
    if namespace:
        sql += " WHERE namespace = ?"
        args.append(namespace)
    sql += " ORDER BY id DESC LIMIT ?"
    args.append(int(limit))
    with connect() as conn:
        rows = conn.execute(sql, args).fetchall()
    return [EventRow(**dict(r)) for r in rows]


def start_run(namespace: str, command: str) -> int:
    with connect() as conn:
        cur = conn.execute(
            "INSERT INTO runs (namespace, command, status, started_at) VALUES (?, ?, 'running', ?)",
            (namespace, command, utc_now()),
        )
        return int(cur.lastrowid)


def finish_run(run_id: int, ok: bool, summary: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE runs SET status = ?, summary = ?, finished_at = ? WHERE id = ?",
            ("ok" if ok else "failed", summary, utc_now(), run_id),
        )


def list_runs(namespace: str | None = None, limit: int = 20) -> list[RunRow]:
    sql = "SELECT id, namespace, command, status, summary, started_at, finished_at FROM runs"
    args: list[object] = []
    if namespace:
        sql += " WHERE namespace = ?"
        args.append(namespace)
    sql += " ORDER BY id DESC LIMIT ?"
    args.append(int(limit))
    with connect() as conn:
        rows = conn.execute(sql, args).fetchall()
    return [RunRow(**dict(r)) for r in rows]
