"""
ci_copilot/database.py — SQLite persistence for run history and the LLM cache
=============================================================================
Stores one row per pipeline run so `ci-copilot history` and the Streamlit
dashboard can show what each run did, plus a response cache so re-running a
stage on an unchanged input does not pay for the same completion twice.

Design decisions
----------------
- **Flat schema** — the full RunTrace is stored as a JSON TEXT column on the
  `pipeline_runs` row rather than normalised tables.
- **WAL journal mode** — the dashboard may read while a run is writing.
- **Path from settings** — CI_COPILOT_DB_PATH (default
  `.ci-copilot/ci_copilot.db`); CI jobs usually cache that directory.

Public API
----------
  init_db(path)                      create tables if they don't exist
  save_run(trace, status, path)      persist a RunTrace
  get_run(run_id, path)              → dict | None
  get_recent_runs(limit, path)       → list[dict]
  delete_run(run_id, path)
  get_llm_cache(key, path)           → dict | None (increments hit_count)
  set_llm_cache(key, tier, model, response, path)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Optional, Union

from ci_copilot.agent_trace import RunTrace

logger = logging.getLogger(__name__)

PathLike = Union[str, Path, None]


def _resolve(path: PathLike) -> Path:
    if path is None:
        from ci_copilot.config import get_settings
        path = get_settings().pipeline.db_path
    return Path(path)


def _get_conn(path: PathLike = None) -> sqlite3.Connection:
    """Return a connection with row_factory set, creating the parent dir."""
    db_path = _resolve(path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(path: PathLike = None) -> None:
    """Create tables if they don't exist."""
    conn = _get_conn(path)
    try:
        conn.executescript("""
        CREATE TABLE IF NOT EXISTS pipeline_runs (
            run_id      TEXT PRIMARY KEY,
            repo        TEXT,
            branch      TEXT,
            mode        TEXT,
            status      TEXT,
            total_ms    REAL,
            stage_count INTEGER,
            trace_json  TEXT NOT NULL,
            created_at  TEXT DEFAULT (datetime('now'))
        );
        CREATE TABLE IF NOT EXISTS llm_response_cache (
            cache_key     TEXT PRIMARY KEY,
            tier          TEXT NOT NULL,
            model         TEXT NOT NULL,
            response_json TEXT NOT NULL,
            created_at    TEXT DEFAULT (datetime('now')),
            hit_count     INTEGER DEFAULT 0
        );
        """)
        conn.commit()
    finally:
        conn.close()


# ─── Run history ─────────────────────────────────────────────────────────────

def save_run(trace: RunTrace, status: str, path: PathLike = None) -> None:
    """Insert or replace the row for *trace.run_id*."""
    init_db(path)
    conn = _get_conn(path)
    try:
        conn.execute(
            """
            INSERT OR REPLACE INTO pipeline_runs
                (run_id, repo, branch, mode, status, total_ms, stage_count, trace_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trace.run_id, trace.repo, trace.branch, trace.mode, status,
                trace.total_ms, len(trace.steps), json.dumps(trace.to_dict()),
            ),
        )
        conn.commit()
    finally:
        conn.close()
    logger.debug("Run %s saved (%s)", trace.run_id, status)


def get_run(run_id: str, path: PathLike = None) -> Optional[dict]:
    """Fetch a run by id. Returns dict (with a decoded `trace`) or None."""
    init_db(path)
    conn = _get_conn(path)
    try:
        row = conn.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,)).fetchone()
    finally:
        conn.close()
    if row is None:
        return None
    record = dict(row)
    record["trace"] = RunTrace.from_dict(json.loads(record["trace_json"]))
    return record


def get_recent_runs(limit: int = 20, path: PathLike = None) -> list[dict]:
    """Newest runs first, without the trace blob."""
    init_db(path)
    conn = _get_conn(path)
    try:
        rows = conn.execute(
            """
            SELECT run_id, repo, branch, mode, status, total_ms, stage_count, created_at
            FROM pipeline_runs ORDER BY created_at DESC, rowid DESC LIMIT ?
            """,
            (limit,),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def delete_run(run_id: str, path: PathLike = None) -> None:
    conn = _get_conn(path)
    try:
        conn.execute("DELETE FROM pipeline_runs WHERE run_id = ?", (run_id,))
        conn.commit()
    finally:
        conn.close()


# ─── LLM Response Cache ──────────────────────────────────────────────────────

def get_llm_cache(cache_key: str, path: PathLike = None) -> Optional[dict]:
    """Return the cached LLM response dict, or None on miss.
    Also increments hit_count so the dashboard can show reuse rate.
    """
    init_db(path)
    conn = _get_conn(path)
    try:
        row = conn.execute(
            "SELECT response_json FROM llm_response_cache WHERE cache_key = ?",
            (cache_key,),
        ).fetchone()
        if row is None:
            return None
        conn.execute(
            "UPDATE llm_response_cache SET hit_count = hit_count + 1 WHERE cache_key = ?",
            (cache_key,),
        )
        conn.commit()
    finally:
        conn.close()
    return json.loads(row["response_json"])


def set_llm_cache(cache_key: str, tier: str, model: str, response: dict, path: PathLike = None) -> None:
    """Persist an LLM response dict keyed by its SHA-256 hash.
    Duplicate keys are ignored (same input → same result).
    """
    init_db(path)
    conn = _get_conn(path)
    try:
        conn.execute(
            """
            INSERT OR IGNORE INTO llm_response_cache
                (cache_key, tier, model, response_json)
            VALUES (?, ?, ?, ?)
            """,
            (cache_key, tier, model, json.dumps(response)),
        )
        conn.commit()
    finally:
        conn.close()


def cache_stats(path: PathLike = None) -> dict[str, int]:
    init_db(path)
    conn = _get_conn(path)
    try:
        row = conn.execute(
            "SELECT COUNT(*) AS entries, COALESCE(SUM(hit_count), 0) AS hits FROM llm_response_cache"
        ).fetchone()
    finally:
        conn.close()
    return {"entries": row["entries"], "hits": row["hits"]}
