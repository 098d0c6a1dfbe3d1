"""
Repository pattern for data access.

Handles persistence of monitored containers, the append-only traffic ledger
and the audit trail.
"""

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Set

from .db import get_connection
from .models import (
    AuditAction,
    AuditRecord,
    Entity,
    EntityStatus,
    TrafficDelta,
    from_millis,
    to_millis,
    utcnow,
)


class StoreError(Exception):
    """Raised when a persistence operation fails."""


_ENTITY_COLUMNS = """
    id, name, bandwidth_limit, bandwidth_used, bandwidth_extra, reset_day,
    last_reset_at, expire_at, status, share_token, share_token_expire,
    created_at, updated_at
"""

# Sentinel for "leave this column unchanged" in update()
_UNSET = object()


class EntityRepository:
    """Repository for monitored containers, traffic and audit records.

    Every method opens its own connection so the repository can be shared
    between asyncio tasks that call it from worker threads.
    """

    def __init__(self, db_path: str = "data/bandwidth.db"):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist.

        ``traffic_logs`` and ``audit_logs`` are append-only ledgers. Rows are
        only removed by retention pruning.
        """
        with self._connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS containers (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    bandwidth_limit INTEGER,
                    bandwidth_used INTEGER NOT NULL DEFAULT 0,
                    bandwidth_extra INTEGER NOT NULL DEFAULT 0,
                    reset_day INTEGER NOT NULL DEFAULT 1,
                    last_reset_at INTEGER,
                    expire_at INTEGER,
                    status TEXT NOT NULL DEFAULT 'active',
                    share_token TEXT UNIQUE,
                    share_token_expire INTEGER,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS traffic_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    container_id TEXT NOT NULL,
                    rx_bytes INTEGER NOT NULL,
                    tx_bytes INTEGER NOT NULL,
                    total_bytes INTEGER NOT NULL,
                    timestamp INTEGER NOT NULL,
                    FOREIGN KEY (container_id) REFERENCES containers(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_traffic_container_time
                ON traffic_logs(container_id, timestamp);

                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    container_id TEXT,
                    action TEXT NOT NULL,
                    details TEXT,
                    timestamp INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_audit_time
                ON audit_logs(timestamp DESC);
            """)
            conn.commit()

    # Containers

    def find_all(self) -> List[Entity]:
        """Return all monitored containers, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ENTITY_COLUMNS} FROM containers ORDER BY created_at DESC, id"
            ).fetchall()
            return [_row_to_entity(row) for row in rows]

    def find_by_id(self, entity_id: str) -> Optional[Entity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ENTITY_COLUMNS} FROM containers WHERE id = ?", (entity_id,)
            ).fetchone()
            return _row_to_entity(row) if row else None

    def find_ids(self) -> Set[str]:
        """Return the ids of all stored containers."""
        with self._connect() as conn:
            return {row["id"] for row in conn.execute("SELECT id FROM containers")}

    def find_by_share_token(self, token: str) -> Optional[Entity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ENTITY_COLUMNS} FROM containers WHERE share_token = ?", (token,)
            ).fetchone()
            return _row_to_entity(row) if row else None

    def create(self, entity: Entity) -> Entity:
        """Insert a new container record.

        Raises:
            StoreError: If the id already exists or the write fails
        """
        now = to_millis(utcnow())
        with self._connect() as conn:
            conn.execute(f"""
                INSERT INTO containers ({_ENTITY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entity.id,
                entity.name,
                entity.quota,
                entity.usage,
                entity.extra_quota,
                entity.reset_day,
                to_millis(entity.last_reset_at),
                to_millis(entity.expire_at),
                entity.status.value,
                entity.share_token,
                to_millis(entity.share_token_expire),
                now,
                now,
            ))
            conn.commit()
        return self.find_by_id(entity.id)

    def update(
        self,
        entity_id: str,
        quota=_UNSET,
        extra_quota=_UNSET,
        reset_day=_UNSET,
        expire_at=_UNSET,
    ) -> Optional[Entity]:
        """Update quota settings of a container.

        Only the arguments that are passed are written. ``quota=None`` and
        ``expire_at=None`` clear the value.

        Returns:
            The updated entity, or None if it does not exist

        Raises:
            ValueError: If a value is out of range
        """
        updates = []
        values: list = []

        if quota is not _UNSET:
            if quota is not None and quota < 0:
                raise ValueError("quota cannot be negative")
            updates.append("bandwidth_limit = ?")
            values.append(quota)
        if extra_quota is not _UNSET:
            if extra_quota is None or extra_quota < 0:
                raise ValueError("extra_quota must be a non-negative integer")
            updates.append("bandwidth_extra = ?")
            values.append(extra_quota)
        if reset_day is not _UNSET:
            if reset_day is None or not 1 <= reset_day <= 31:
                raise ValueError("reset_day must be between 1 and 31")
            updates.append("reset_day = ?")
            values.append(reset_day)
        if expire_at is not _UNSET:
            updates.append("expire_at = ?")
            values.append(to_millis(expire_at))

        if not updates:
            return self.find_by_id(entity_id)

        updates.append("updated_at = ?")
        values.append(to_millis(utcnow()))
        values.append(entity_id)

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE containers SET {', '.join(updates)} WHERE id = ?", values
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
        return self.find_by_id(entity_id)

    def update_usage(self, entity_id: str, value: int) -> None:
        """Overwrite durable usage with an absolute value."""
        if value < 0:
            raise ValueError("usage cannot be negative")
        with self._connect() as conn:
            conn.execute(
                "UPDATE containers SET bandwidth_used = ?, updated_at = ? WHERE id = ?",
                (value, to_millis(utcnow()), entity_id),
            )
            conn.commit()

    def update_status(self, entity_id: str, status: EntityStatus) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE containers SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, to_millis(utcnow()), entity_id),
            )
            conn.commit()

    def reset_usage(self, entity_id: str, now: Optional[datetime] = None) -> None:
        """Zero durable usage, clear extra quota and stamp last_reset_at."""
        stamp = to_millis(now or utcnow())
        with self._connect() as conn:
            conn.execute("""
                UPDATE containers
                SET bandwidth_used = 0, bandwidth_extra = 0,
                    last_reset_at = ?, updated_at = ?
                WHERE id = ?
            """, (stamp, stamp, entity_id))
            conn.commit()

    def generate_share_token(self, entity_id: str, expire_at: Optional[datetime] = None) -> str:
        """Assign a fresh share token to a container and return it."""
        token = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute("""
                UPDATE containers
                SET share_token = ?, share_token_expire = ?, updated_at = ?
                WHERE id = ?
            """, (token, to_millis(expire_at), to_millis(utcnow()), entity_id))
            conn.commit()
        return token

    def delete(self, entity_id: str) -> bool:
        """Delete a container and, by cascade, its traffic rows."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM containers WHERE id = ?", (entity_id,))
            conn.commit()
            return cursor.rowcount > 0

    # Traffic ledger

    def append_traffic_deltas(self, batch: Sequence[TrafficDelta]) -> None:
        """Insert multiple traffic deltas atomically.

        All rows are inserted in a single transaction; on failure nothing is
        written.
        """
        if not batch:
            return
        with self._connect() as conn:
            conn.executemany("""
                INSERT INTO traffic_logs
                (container_id, rx_bytes, tx_bytes, total_bytes, timestamp)
                VALUES (?, ?, ?, ?, ?)
            """, [
                (d.entity_id, d.rx_bytes, d.tx_bytes, d.total_bytes, to_millis(d.timestamp))
                for d in batch
            ])
            conn.commit()

    def find_traffic(self, entity_id: str, limit: int = 100) -> List[TrafficDelta]:
        """Return recent traffic deltas for a container, newest first."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT container_id, rx_bytes, tx_bytes, total_bytes, timestamp
                FROM traffic_logs
                WHERE container_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (entity_id, limit)).fetchall()
            return [
                TrafficDelta(
                    entity_id=row["container_id"],
                    rx_bytes=row["rx_bytes"],
                    tx_bytes=row["tx_bytes"],
                    total_bytes=row["total_bytes"],
                    timestamp=from_millis(row["timestamp"]),
                )
                for row in rows
            ]

    # Audit trail

    def append_audit(self, record: AuditRecord) -> None:
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO audit_logs (container_id, action, details, timestamp)
                VALUES (?, ?, ?, ?)
            """, (
                record.entity_id,
                record.action.value,
                record.details,
                to_millis(record.timestamp),
            ))
            conn.commit()

    def find_audit(
        self,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """Get audit records with optional filtering, newest first."""
        query = "SELECT id, container_id, action, details, timestamp FROM audit_logs"
        params: list = []
        conditions = []

        if entity_id:
            conditions.append("container_id = ?")
            params.append(entity_id)
        if action:
            conditions.append("action = ?")
            params.append(action.value)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [
                AuditRecord(
                    id=row["id"],
                    entity_id=row["container_id"],
                    action=AuditAction(row["action"]),
                    details=row["details"],
                    timestamp=from_millis(row["timestamp"]),
                )
                for row in rows
            ]

    def prune(self, before: datetime) -> Dict[str, int]:
        """Delete traffic and audit rows older than ``before``.

        Returns:
            Number of deleted rows per table
        """
        cutoff = to_millis(before)
        with self._connect() as conn:
            traffic = conn.execute(
                "DELETE FROM traffic_logs WHERE timestamp < ?", (cutoff,)
            ).rowcount
            audit = conn.execute(
                "DELETE FROM audit_logs WHERE timestamp < ?", (cutoff,)
            ).rowcount
            conn.commit()
        return {"traffic_logs": traffic, "audit_logs": audit}


def _row_to_entity(row: sqlite3.Row) -> Entity:
    return Entity(
        id=row["id"],
        name=row["name"],
        quota=row["bandwidth_limit"],
        extra_quota=row["bandwidth_extra"] or 0,
        usage=row["bandwidth_used"] or 0,
        reset_day=row["reset_day"],
        last_reset_at=from_millis(row["last_reset_at"]),
        expire_at=from_millis(row["expire_at"]),
        status=EntityStatus(row["status"]),
        share_token=row["share_token"],
        share_token_expire=from_millis(row["share_token_expire"]),
        created_at=from_millis(row["created_at"]),
        updated_at=from_millis(row["updated_at"]),
    )
