from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable

from almanac.models import RECORD_KINDS, SyncState, utc_now


ENTRY_SEPARATOR = "::"


def _utc_now() -> str:
    return utc_now().isoformat()


def pack_synced_entry(local_key: str, remote_id: str) -> str:
    return f"{local_key}{ENTRY_SEPARATOR}{remote_id}"


def unpack_synced_entries(entries: Iterable[Any]) -> dict[str, str]:
    unpacked: dict[str, str] = {}
    for entry in entries or []:
        local_key, _, remote_id = str(entry).rpartition(ENTRY_SEPARATOR)
        if local_key and remote_id:
            unpacked[local_key] = remote_id
    return unpacked


class StateStore:
    """Per-user sync state, identity map and audit trail in one SQLite file.

    Every mutation touches only the columns it owns, so a timestamp update racing
    an identity-map merge never overwrites the other.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_state (
            user_id TEXT PRIMARY KEY,
            enabled INTEGER NOT NULL DEFAULT 0,
            last_synced_at TEXT,
            last_attempt_at TEXT,
            last_error TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS identity_map (
            user_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            local_key TEXT NOT NULL,
            remote_id TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, kind, local_key)
        );

        CREATE TABLE IF NOT EXISTS oauth_grants (
            user_id TEXT PRIMARY KEY,
            refresh_token TEXT NOT NULL,
            scope TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            created INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            failed INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            local_key TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    def get_state(self, user_id: str) -> SyncState:
        state = SyncState(user_id=str(user_id or ""))
        if not user_id:
            return state
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT enabled, last_synced_at, last_attempt_at, last_error
                    FROM sync_state
                    WHERE user_id = ?
                    """,
                    (str(user_id),),
                ).fetchone()
                pairs = conn.execute(
                    """
                    SELECT kind, local_key, remote_id
                    FROM identity_map
                    WHERE user_id = ?
                    ORDER BY kind, local_key
                    """,
                    (str(user_id),),
                ).fetchall()
        if row is not None:
            state.enabled = bool(row["enabled"])
            state.last_synced_at = row["last_synced_at"]
            state.last_attempt_at = row["last_attempt_at"]
            state.last_error = row["last_error"]
        for pair in pairs:
            state.identity_map.setdefault(pair["kind"], {})[pair["local_key"]] = pair["remote_id"]
        return state

    def _set_field(self, user_id: str, column: str, value: Any) -> None:
        if not user_id:
            return
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO sync_state(user_id, {column}, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        {column} = excluded.{column},
                        updated_at = excluded.updated_at
                    """,  # nosec B608 - column names are internal constants
                    (str(user_id), value, _utc_now()),
                )
                conn.commit()

    def set_enabled(self, user_id: str, enabled: bool) -> None:
        self._set_field(user_id, "enabled", 1 if enabled else 0)
        self._set_field(user_id, "last_error", None)

    def is_enabled(self, user_id: str) -> bool:
        return self.get_state(user_id).enabled

    def set_last_error(self, user_id: str, message: str | None) -> None:
        self._set_field(user_id, "last_error", message or None)

    def set_last_synced_at(self, user_id: str, timestamp: str | None = None) -> None:
        self._set_field(user_id, "last_synced_at", timestamp or _utc_now())

    def set_last_attempt_at(self, user_id: str, timestamp: str | None = None) -> None:
        self._set_field(user_id, "last_attempt_at", timestamp or _utc_now())

    def record_bulk_synced(self, user_id: str, synced: dict[str, list[str]]) -> int:
        """Merge ``localKey::remoteId`` entries per kind; existing pairs are never removed."""
        if not user_id or not synced:
            return 0
        rows: list[tuple[str, str, str, str, str]] = []
        now = _utc_now()
        for kind, entries in synced.items():
            if kind not in RECORD_KINDS or not entries:
                continue
            for local_key, remote_id in unpack_synced_entries(entries).items():
                rows.append((str(user_id), kind, local_key, remote_id, now))
        if not rows:
            return 0
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO identity_map(user_id, kind, local_key, remote_id, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, kind, local_key) DO UPDATE SET
                        remote_id = excluded.remote_id,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )
                conn.commit()
        return len(rows)

    def enabled_users(self) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT user_id FROM sync_state WHERE enabled = 1 ORDER BY user_id"
                ).fetchall()
        return [str(row["user_id"]) for row in rows]

    def clear_user(self, user_id: str) -> None:
        if not user_id:
            return
        with self._lock:
            with self._connect() as conn:
                for table in ("sync_state", "identity_map", "oauth_grants", "sync_runs", "audit_events"):
                    conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (str(user_id),))  # nosec B608
                conn.commit()

    # ------------------------------------------------------------------
    # OAuth grants (refresh tokens only; access tokens are never stored)
    # ------------------------------------------------------------------

    def set_grant(self, user_id: str, refresh_token: str, scope: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_grants(user_id, refresh_token, scope, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        refresh_token = excluded.refresh_token,
                        scope = excluded.scope,
                        updated_at = excluded.updated_at
                    """,
                    (str(user_id), str(refresh_token), str(scope), _utc_now()),
                )
                conn.commit()

    def get_grant(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT user_id, refresh_token, scope, updated_at
                    FROM oauth_grants
                    WHERE user_id = ?
                    """,
                    (str(user_id),),
                ).fetchone()
        return dict(row) if row else None

    def clear_grant(self, user_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM oauth_grants WHERE user_id = ?", (str(user_id),))
                conn.commit()

    # ------------------------------------------------------------------
    # Run history and audit trail
    # ------------------------------------------------------------------

    def start_sync_run(self, *, user_id: str, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(user_id, run_at, trigger, status, message, duration_ms, created, updated, failed)
                    VALUES (?, ?, ?, 'running', ?, 0, 0, 0, 0)
                    """,
                    (str(user_id), _utc_now(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        created: int,
        updated: int,
        failed: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, created = ?, updated = ?, failed = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(created),
                        int(updated),
                        int(failed),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, user_id, run_at, trigger, status, message, duration_ms, created, updated, failed
                    FROM sync_runs
                    WHERE user_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (str(user_id), max(1, limit)),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        user_id: str,
        local_key: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, user_id, local_key, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), str(user_id), local_key, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, user_id: str, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT id, run_id, created_at, user_id, local_key, action, details_json
            FROM audit_events
            WHERE user_id = ?
        """
        params: list[Any] = [str(user_id)]
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(int(run_id))
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
