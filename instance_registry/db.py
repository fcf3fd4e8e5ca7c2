from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from instance_checks.models import (
    Instance,
    InstanceMetadata,
    InstanceNotFoundError,
    StorageError,
)
from instance_checks.thumbnails import DEFAULT_PLACEHOLDER


SCHEMA_VERSION = 1


def _utc_ts() -> float:
    return float(time.time())


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL lets the web process read while a sweep writes.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error:
        pass
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
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
        CREATE TABLE IF NOT EXISTS instances (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          uri TEXT NOT NULL UNIQUE,
          name TEXT NOT NULL,
          type TEXT NOT NULL DEFAULT '',
          nsfw INTEGER NOT NULL DEFAULT 0,
          api_mode TEXT NOT NULL DEFAULT 'mastodon',
          verified INTEGER NOT NULL DEFAULT 0,
          failed_checks INTEGER NOT NULL DEFAULT 0,
          banned INTEGER NOT NULL DEFAULT 0,
          ban_reason TEXT,
          created_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS instance_data (
          instance_id INTEGER PRIMARY KEY REFERENCES instances(id) ON DELETE CASCADE,
          title TEXT NOT NULL DEFAULT '',
          description TEXT NOT NULL DEFAULT '',
          thumbnail TEXT NOT NULL DEFAULT '',
          user_count INTEGER NOT NULL DEFAULT 0,
          status_count INTEGER NOT NULL DEFAULT 0,
          registrations INTEGER NOT NULL DEFAULT 0,
          approval_required INTEGER NOT NULL DEFAULT 0,
          cache TEXT NOT NULL DEFAULT '{}',
          updated_at_ts REAL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_instances_banned ON instances(banned);")


def _row_to_instance(row: sqlite3.Row) -> Instance:
    return Instance(
        id=int(row["id"]),
        uri=str(row["uri"]),
        name=str(row["name"]),
        type=str(row["type"] or ""),
        nsfw=bool(row["nsfw"]),
        api_mode=str(row["api_mode"] or ""),
        verified=bool(row["verified"]),
        failed_checks=int(row["failed_checks"] or 0),
        banned=bool(row["banned"]),
        ban_reason=row["ban_reason"],
        created_at=float(row["created_at_ts"] or 0.0),
    )


def _row_to_metadata(row: sqlite3.Row) -> InstanceMetadata:
    return InstanceMetadata(
        title=str(row["title"] or ""),
        description=str(row["description"] or ""),
        thumbnail=str(row["thumbnail"] or ""),
        user_count=int(row["user_count"] or 0),
        status_count=int(row["status_count"] or 0),
        registrations=bool(row["registrations"]),
        approval_required=bool(row["approval_required"]),
        cache=str(row["cache"] or "{}"),
        updated_at=float(row["updated_at_ts"]) if row["updated_at_ts"] is not None else None,
    )


class SqliteInstanceStore:
    """SQLite-backed instance store; one short-lived connection per operation."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = _connect(self.db_path)
        except (sqlite3.Error, OSError, ValueError) as e:
            raise StorageError(f"cannot open {self.db_path}: {type(e).__name__}: {e}") from e
        try:
            _ensure_schema_conn(conn)
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"{type(e).__name__}: {e}") from e
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._session():
            pass

    def insert_instance(
        self,
        uri: str,
        *,
        name: str,
        api_mode: str = "mastodon",
        type: str = "",  # noqa: A002
        nsfw: bool = False,
        verified: bool = False,
        failed_checks: int = 0,
        banned: bool = False,
        ban_reason: str | None = None,
        metadata: InstanceMetadata | None = None,
    ) -> Instance:
        """Create an instance with its metadata row (registration seeds records this way)."""
        md = metadata or InstanceMetadata(title=name, description="", thumbnail=DEFAULT_PLACEHOLDER)
        now = _utc_ts()
        with self._session() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                cur = conn.execute(
                    """
                    INSERT INTO instances
                      (uri, name, type, nsfw, api_mode, verified, failed_checks, banned, ban_reason, created_at_ts)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        uri.strip(),
                        name.strip(),
                        type,
                        int(bool(nsfw)),
                        api_mode,
                        int(bool(verified)),
                        max(0, int(failed_checks)),
                        int(bool(banned)),
                        ban_reason,
                        now,
                    ),
                )
                instance_id = int(cur.lastrowid)
                conn.execute(
                    """
                    INSERT INTO instance_data
                      (instance_id, title, description, thumbnail, user_count, status_count,
                       registrations, approval_required, cache, updated_at_ts)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        instance_id,
                        md.title,
                        md.description,
                        md.thumbnail,
                        md.user_count,
                        md.status_count,
                        int(md.registrations),
                        int(md.approval_required),
                        md.cache,
                        md.updated_at,
                    ),
                )
                conn.execute("COMMIT;")
            except Exception:
                conn.execute("ROLLBACK;")
                raise
            row = conn.execute("SELECT * FROM instances WHERE id=?", (instance_id,)).fetchone()
            return _row_to_instance(row)

    def list_active_instances(self) -> list[Instance]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM instances WHERE banned=0 ORDER BY id").fetchall()
            return [_row_to_instance(r) for r in rows]

    def get_instance(self, uri: str) -> Instance:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM instances WHERE uri=?", (uri.strip(),)).fetchone()
            if row is None:
                raise InstanceNotFoundError(uri)
            return _row_to_instance(row)

    def set_failed_checks(self, instance_id: int, failed_checks: int) -> None:
        with self._session() as conn:
            res = conn.execute(
                "UPDATE instances SET failed_checks=? WHERE id=?",
                (max(0, int(failed_checks)), int(instance_id)),
            )
            if int(res.rowcount or 0) == 0:
                raise InstanceNotFoundError(instance_id)

    def ban_instance(self, instance_id: int, reason: str) -> None:
        with self._session() as conn:
            res = conn.execute(
                "UPDATE instances SET banned=1, ban_reason=? WHERE id=?",
                (reason, int(instance_id)),
            )
            if int(res.rowcount or 0) == 0:
                raise InstanceNotFoundError(instance_id)

    def get_metadata(self, instance_id: int) -> InstanceMetadata:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM instance_data WHERE instance_id=?", (int(instance_id),)).fetchone()
            if row is None:
                raise InstanceNotFoundError(instance_id, kind="instance data")
            return _row_to_metadata(row)

    def replace_metadata(self, instance_id: int, metadata: InstanceMetadata) -> None:
        with self._session() as conn:
            res = conn.execute(
                """
                UPDATE instance_data
                SET title=?, description=?, thumbnail=?, user_count=?, status_count=?,
                    registrations=?, approval_required=?, cache=?, updated_at_ts=?
                WHERE instance_id=?
                """,
                (
                    metadata.title,
                    metadata.description,
                    metadata.thumbnail,
                    int(metadata.user_count),
                    int(metadata.status_count),
                    int(bool(metadata.registrations)),
                    int(bool(metadata.approval_required)),
                    metadata.cache,
                    metadata.updated_at if metadata.updated_at is not None else _utc_ts(),
                    int(instance_id),
                ),
            )
            if int(res.rowcount or 0) == 0:
                raise InstanceNotFoundError(instance_id, kind="instance data")

    def list_directory(self) -> list[dict[str, Any]]:
        """Non-banned instances joined with their metadata, for the public listing."""
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT
                  i.id, i.uri, i.name, i.type, i.nsfw, i.api_mode, i.verified,
                  d.title, d.description, d.thumbnail, d.user_count, d.status_count,
                  d.registrations, d.approval_required, d.updated_at_ts
                FROM instances i
                LEFT JOIN instance_data d ON d.instance_id=i.id
                WHERE i.banned=0
                ORDER BY d.user_count DESC, i.id
                """
            ).fetchall()
            out: list[dict[str, Any]] = []
            for r in rows:
                item = dict(r)
                for key in ("nsfw", "verified", "registrations", "approval_required"):
                    item[key] = bool(item.get(key))
                out.append(item)
            return out
