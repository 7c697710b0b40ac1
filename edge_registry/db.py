from __future__ import annotations

import json
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from edge_registry.settings import RegistrySettings


SCHEMA_VERSION = 1

HANDLER_TYPES = ("request", "response", "middleware")
REGIONS = ("all", "us-east", "us-west", "eu-central", "ap-south")
HANDLER_STATUSES = ("draft", "active", "error")


class HandlerNameConflict(Exception):
    """Another handler already uses the requested name."""


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except Exception:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL improves concurrency for a single-host service.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except Exception:
        pass
    return conn


def ensure_schema(settings: RegistrySettings) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
    finally:
        conn.close()


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);"
    )
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS edge_handlers (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL UNIQUE,
          pattern TEXT NOT NULL DEFAULT '/*',
          code TEXT NOT NULL,
          handler_type TEXT NOT NULL DEFAULT 'request', -- request|response|middleware
          regions_json TEXT NOT NULL DEFAULT '["all"]',
          status TEXT NOT NULL DEFAULT 'draft', -- draft|active|error
          version INTEGER NOT NULL DEFAULT 1,
          deployed_at_ts REAL,
          last_tested_at_ts REAL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS handler_test_results (
          seq INTEGER PRIMARY KEY AUTOINCREMENT,
          handler_id TEXT NOT NULL REFERENCES edge_handlers(id) ON DELETE CASCADE,
          kind TEXT NOT NULL, -- test|deploy
          success INTEGER NOT NULL,
          ts REAL NOT NULL,
          response_json TEXT,
          error TEXT,
          error_kind TEXT,
          stack TEXT,
          performance_json TEXT NOT NULL DEFAULT '{}',
          logs_json TEXT NOT NULL DEFAULT '[]'
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_handler_results_seq ON handler_test_results(handler_id, seq);")


def normalize_regions(regions: Iterable[str] | None) -> list[str]:
    """Ordered, de-duplicated region list; empty input means everywhere."""
    out: list[str] = []
    for r in regions or ():
        s = str(r or "").strip().lower()
        if s and s not in out:
            out.append(s)
    return out or ["all"]


def _row_to_handler(row: sqlite3.Row, *, include_code: bool) -> dict[str, Any]:
    regions = _json_loads(row["regions_json"])
    out: dict[str, Any] = {
        "id": str(row["id"]),
        "name": str(row["name"]),
        "pattern": str(row["pattern"]),
        "type": str(row["handler_type"]),
        "regions": regions if isinstance(regions, list) else ["all"],
        "status": str(row["status"]),
        "version": int(row["version"]),
        "deployed_at_ts": row["deployed_at_ts"],
        "last_tested_at_ts": row["last_tested_at_ts"],
        "created_at_ts": row["created_at_ts"],
        "updated_at_ts": row["updated_at_ts"],
    }
    if include_code:
        out["code"] = str(row["code"])
    return out


def _row_to_result(row: sqlite3.Row) -> dict[str, Any]:
    perf = _json_loads(row["performance_json"])
    logs = _json_loads(row["logs_json"])
    return {
        "timestamp": row["ts"],
        "kind": str(row["kind"]),
        "success": bool(int(row["success"] or 0)),
        "response": _json_loads(row["response_json"]),
        "error": row["error"],
        "error_kind": row["error_kind"],
        "stack": row["stack"],
        "performance": perf if isinstance(perf, dict) else {},
        "logs": logs if isinstance(logs, list) else [],
    }


def list_handlers(settings: RegistrySettings) -> list[dict[str, Any]]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute("SELECT * FROM edge_handlers ORDER BY created_at_ts DESC").fetchall()
        return [_row_to_handler(r, include_code=False) for r in rows]
    finally:
        conn.close()


def get_handler(settings: RegistrySettings, *, handler_id: str, include_results: bool = True) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT * FROM edge_handlers WHERE id=?", (handler_id,)).fetchone()
        if not row:
            return None
        out = _row_to_handler(row, include_code=True)
        if include_results:
            results = conn.execute(
                "SELECT * FROM handler_test_results WHERE handler_id=? ORDER BY seq ASC",
                (handler_id,),
            ).fetchall()
            out["test_results"] = [_row_to_result(r) for r in results]
        return out
    finally:
        conn.close()


def insert_handler(
    settings: RegistrySettings,
    *,
    name: str,
    code: str,
    pattern: str = "/*",
    handler_type: str = "request",
    regions: Iterable[str] | None = None,
) -> dict[str, Any]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        hid = _uuid()
        now = _utc_ts()
        try:
            conn.execute(
                """
                INSERT INTO edge_handlers (
                  id, name, pattern, code, handler_type, regions_json, status, version, created_at_ts, updated_at_ts
                ) VALUES (?, ?, ?, ?, ?, ?, 'draft', 1, ?, ?)
                """,
                (
                    hid,
                    name.strip(),
                    str(pattern or "/*").strip() or "/*",
                    str(code),
                    str(handler_type or "request").strip().lower() or "request",
                    _json_dumps(normalize_regions(regions)),
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise HandlerNameConflict(name.strip()) from exc
        row = conn.execute("SELECT * FROM edge_handlers WHERE id=?", (hid,)).fetchone()
        out = _row_to_handler(row, include_code=True)
        out["test_results"] = []
        return out
    finally:
        conn.close()


def update_handler(settings: RegistrySettings, *, handler_id: str, patch: dict[str, Any]) -> bool:
    """
    Partial update of the user-editable fields. Status, version and history are never touched here.
    Raises HandlerNameConflict on a rename collision.
    """
    allowed = {"name", "pattern", "code", "type", "regions"}
    cleaned = {k: v for k, v in (patch or {}).items() if k in allowed and v is not None}

    sets: list[str] = []
    params: list[Any] = []

    if "name" in cleaned:
        sets.append("name=?")
        params.append(str(cleaned["name"]).strip())

    if "pattern" in cleaned:
        sets.append("pattern=?")
        params.append(str(cleaned["pattern"]).strip() or "/*")

    if "code" in cleaned:
        sets.append("code=?")
        params.append(str(cleaned["code"]))

    if "type" in cleaned:
        sets.append("handler_type=?")
        params.append(str(cleaned["type"]).strip().lower())

    if "regions" in cleaned:
        sets.append("regions_json=?")
        params.append(_json_dumps(normalize_regions(cleaned["regions"])))

    now = _utc_ts()
    sets.append("updated_at_ts=?")
    params.append(now)
    params.append(handler_id)

    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        try:
            res = conn.execute(f"UPDATE edge_handlers SET {', '.join(sets)} WHERE id=?", tuple(params))
        except sqlite3.IntegrityError as exc:
            raise HandlerNameConflict(str(cleaned.get("name") or "")) from exc
        return int(res.rowcount or 0) > 0
    finally:
        conn.close()


def delete_handler(settings: RegistrySettings, *, handler_id: str) -> bool:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        res = conn.execute("DELETE FROM edge_handlers WHERE id=?", (handler_id,))
        return int(res.rowcount or 0) > 0
    finally:
        conn.close()


@dataclass(frozen=True)
class ResultRecord:
    kind: str  # test|deploy
    success: bool
    response: dict[str, Any] | None = None
    error: str | None = None
    error_kind: str | None = None
    stack: str | None = None
    performance: dict[str, Any] = field(default_factory=dict)
    logs: list[str] = field(default_factory=list)
    timestamp: float | None = None


def _insert_result(conn: sqlite3.Connection, *, handler_id: str, result: ResultRecord, now: float) -> None:
    conn.execute(
        """
        INSERT INTO handler_test_results (
          handler_id, kind, success, ts, response_json, error, error_kind, stack, performance_json, logs_json
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            handler_id,
            str(result.kind),
            1 if result.success else 0,
            float(result.timestamp if result.timestamp is not None else now),
            _json_dumps(result.response) if result.response is not None else None,
            result.error,
            result.error_kind,
            result.stack,
            _json_dumps(result.performance or {}),
            _json_dumps(list(result.logs or [])),
        ),
    )


def _prune_results(conn: sqlite3.Connection, *, handler_id: str, keep: int) -> None:
    conn.execute(
        """
        DELETE FROM handler_test_results
        WHERE handler_id=? AND seq NOT IN (
          SELECT seq FROM handler_test_results WHERE handler_id=? ORDER BY seq DESC LIMIT ?
        )
        """,
        (handler_id, handler_id, max(1, int(keep))),
    )


def record_test_result(settings: RegistrySettings, *, handler_id: str, result: ResultRecord) -> bool:
    """
    Append a test result and stamp last_tested_at_ts. Status and version are left alone.
    Returns False when the handler no longer exists.
    """
    now = _utc_ts()
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            row = conn.execute("SELECT id FROM edge_handlers WHERE id=?", (handler_id,)).fetchone()
            if not row:
                conn.execute("ROLLBACK;")
                return False
            _insert_result(conn, handler_id=handler_id, result=result, now=now)
            conn.execute("UPDATE edge_handlers SET last_tested_at_ts=? WHERE id=?", (now, handler_id))
            _prune_results(conn, handler_id=handler_id, keep=settings.test_results_retention)
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
        return True
    finally:
        conn.close()


def list_test_results(settings: RegistrySettings, *, handler_id: str, limit: int = 50) -> list[dict[str, Any]]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT * FROM handler_test_results WHERE handler_id=? ORDER BY seq DESC LIMIT ?",
            (handler_id, max(1, min(int(limit), 500))),
        ).fetchall()
        return [_row_to_result(r) for r in rows]
    finally:
        conn.close()


@dataclass(frozen=True)
class DeployOutcome:
    updated: bool
    conflict: bool
    handler_id: str | None
    status: str | None
    version: int | None


def complete_deploy(
    settings: RegistrySettings,
    *,
    handler_id: str,
    expected_version: int,
    result: ResultRecord,
    expected_code: str | None = None,
) -> DeployOutcome:
    """
    Apply a finished deploy: append the result and move the handler to active (version+1)
    or error (version unchanged), all in one transaction.

    The version (and, when given, the code) read before the sandbox run must still be current;
    otherwise another deploy or an edit won the race and nothing is written.
    """
    now = _utc_ts()
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            row = conn.execute("SELECT id, version, code FROM edge_handlers WHERE id=?", (handler_id,)).fetchone()
            if not row:
                conn.execute("ROLLBACK;")
                return DeployOutcome(updated=False, conflict=False, handler_id=None, status=None, version=None)

            current = int(row["version"])
            stale_code = expected_code is not None and str(row["code"]) != str(expected_code)
            if current != int(expected_version) or stale_code:
                conn.execute("ROLLBACK;")
                return DeployOutcome(updated=False, conflict=True, handler_id=handler_id, status=None, version=current)

            if result.success:
                status = "active"
                version = current + 1
                res = conn.execute(
                    """
                    UPDATE edge_handlers
                    SET status='active', version=?, deployed_at_ts=?, updated_at_ts=?
                    WHERE id=? AND version=?
                    """,
                    (version, now, now, handler_id, current),
                )
            else:
                status = "error"
                version = current
                res = conn.execute(
                    "UPDATE edge_handlers SET status='error', updated_at_ts=? WHERE id=? AND version=?",
                    (now, handler_id, current),
                )
            if int(res.rowcount or 0) != 1:
                conn.execute("ROLLBACK;")
                return DeployOutcome(updated=False, conflict=True, handler_id=handler_id, status=None, version=current)

            _insert_result(conn, handler_id=handler_id, result=result, now=now)
            _prune_results(conn, handler_id=handler_id, keep=settings.test_results_retention)
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
        return DeployOutcome(updated=True, conflict=False, handler_id=handler_id, status=status, version=version)
    finally:
        conn.close()
