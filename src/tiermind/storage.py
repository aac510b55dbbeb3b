"""Tiered storage. Durable tiers in SQLite, foreign tier in RAM."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from tiermind.arena import ForeignArena
from tiermind.errors import MalformedRecord, NotFound, PermissionDenied, StorageFault
from tiermind.models import Identity, Tier, Trace

logger = logging.getLogger(__name__)

# Precedencia cuando el tier es desconocido.
READ_ORDER = (Tier.ANCHOR, Tier.ECHO, Tier.STUB, Tier.FOREIGN)


class TieredStore:
    """SQLite backend for anchor/stub/echo rows plus the foreign arena."""

    def __init__(self, path: str | Path, arena: ForeignArena | None = None) -> None:
        self.path = Path(path)
        self.arena = arena or ForeignArena()
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(str(self.path), check_same_thread=False)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self._init_schema()
        except sqlite3.Error as exc:
            raise StorageFault(f"cannot open store at {self.path}: {exc}") from exc

    def _init_schema(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS identities (
                tier TEXT NOT NULL,
                id TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at REAL NOT NULL,
                PRIMARY KEY (tier, id)
            );
            CREATE INDEX IF NOT EXISTS idx_identities_id
                ON identities(id);

            CREATE TABLE IF NOT EXISTS traces (
                id TEXT PRIMARY KEY,
                operation TEXT NOT NULL,
                input_text TEXT NOT NULL DEFAULT '',
                output_text TEXT NOT NULL DEFAULT '',
                duration_ms REAL,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_traces_operation
                ON traces(operation);
            CREATE INDEX IF NOT EXISTS idx_traces_created
                ON traces(created_at DESC);
        """)
        self.conn.commit()

    @contextmanager
    def _io(self, what: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self.conn
            except sqlite3.Error as exc:
                raise StorageFault(f"{what} failed: {exc}") from exc

    # ── Identity CRUD ──────────────────────────────────────────────────

    def read(self, tier: Tier, identity_id: str) -> Identity | None:
        if tier is Tier.FOREIGN:
            return self.arena.get(identity_id)
        with self._io("read") as conn:
            row = conn.execute(
                "SELECT data FROM identities WHERE tier = ? AND id = ?",
                (tier.value, identity_id),
            ).fetchone()
        if row is None:
            return None
        try:
            identity = self._decode(row[0])
        except MalformedRecord as exc:
            logger.warning("skipping malformed %s record %r: %s",
                           tier.value, identity_id, exc)
            return None
        if identity.tier is not tier or identity.id != identity_id:
            logger.warning("record %s/%s disagrees with its key; ignoring",
                           tier.value, identity_id)
            return None
        return identity

    def write(self, tier: Tier, identity: Identity) -> list[str]:
        """Whole-record upsert. Returns foreign ids the arena evicted to make room."""
        if identity.tier is not tier:
            raise ValueError(
                f"identity {identity.id!r} is {identity.tier.value}, not {tier.value}"
            )
        if tier is Tier.FOREIGN:
            return self.arena.put(identity)
        with self._io("write") as conn:
            conn.execute(
                """INSERT OR REPLACE INTO identities (tier, id, data, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (tier.value, identity.id, json.dumps(identity.to_dict()), time.time()),
            )
            conn.commit()
        return []

    def delete(self, tier: Tier, identity_id: str) -> None:
        if tier is Tier.ANCHOR:
            raise PermissionDenied(f"anchor identity {identity_id!r} cannot be deleted")
        if tier is Tier.FOREIGN:
            if not self.arena.remove(identity_id):
                raise NotFound(identity_id, tier.value)
            return
        with self._io("delete") as conn:
            cursor = conn.execute(
                "DELETE FROM identities WHERE tier = ? AND id = ?",
                (tier.value, identity_id),
            )
            conn.commit()
        if cursor.rowcount == 0:
            raise NotFound(identity_id, tier.value)

    def list(self, tier: Tier) -> list[str]:
        if tier is Tier.FOREIGN:
            return self.arena.ids()
        with self._io("list") as conn:
            rows = conn.execute(
                "SELECT id FROM identities WHERE tier = ? ORDER BY id",
                (tier.value,),
            ).fetchall()
        return [r[0] for r in rows]

    def load_tier(self, tier: Tier) -> list[Identity]:
        """Every readable record of a tier. Malformed rows are skipped."""
        if tier is Tier.FOREIGN:
            return self.arena.snapshot()
        with self._io("load") as conn:
            rows = conn.execute(
                "SELECT id, data FROM identities WHERE tier = ? ORDER BY id",
                (tier.value,),
            ).fetchall()
        out = []
        for identity_id, data in rows:
            try:
                out.append(self._decode(data))
            except MalformedRecord as exc:
                logger.warning("skipping malformed %s record %r: %s",
                               tier.value, identity_id, exc)
        return out

    def locate(self, identity_id: str) -> Identity | None:
        """First hit in READ_ORDER."""
        for tier in READ_ORDER:
            identity = self.read(tier, identity_id)
            if identity is not None:
                return identity
        return None

    def exists(self, identity_id: str, durable_only: bool = False) -> bool:
        tiers = [t for t in READ_ORDER if t.durable] if durable_only else READ_ORDER
        if Tier.FOREIGN in tiers and identity_id in self.arena:
            return True
        with self._io("exists") as conn:
            row = conn.execute(
                "SELECT 1 FROM identities WHERE id = ? LIMIT 1", (identity_id,),
            ).fetchone()
        return row is not None

    def count(self, tier: Tier | None = None) -> int:
        if tier is Tier.FOREIGN:
            return len(self.arena)
        with self._io("count") as conn:
            if tier is None:
                durable = conn.execute("SELECT COUNT(*) FROM identities").fetchone()[0]
                return durable + len(self.arena)
            return conn.execute(
                "SELECT COUNT(*) FROM identities WHERE tier = ?", (tier.value,),
            ).fetchone()[0]

    # ── Traces ─────────────────────────────────────────────────────────

    def save_trace(self, trace: Trace) -> None:
        with self._io("save_trace") as conn:
            conn.execute(
                """INSERT INTO traces
                   (id, operation, input_text, output_text,
                    duration_ms, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    trace.id, trace.operation, trace.input_text,
                    trace.output_text, trace.duration_ms,
                    json.dumps(trace.metadata), trace.created_at,
                ),
            )
            conn.commit()

    def load_traces(self, operation: str | None = None,
                    limit: int = 100) -> list[Trace]:
        query = "SELECT * FROM traces WHERE 1=1"
        params: list = []
        if operation is not None:
            query += " AND operation = ?"
            params.append(operation)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._io("load_traces") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_trace(r) for r in rows]

    # ── Close ──────────────────────────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # ── Row mappers ────────────────────────────────────────────────────

    @staticmethod
    def _decode(data: str) -> Identity:
        try:
            payload = json.loads(data)
        except (TypeError, ValueError) as exc:
            raise MalformedRecord(f"invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedRecord("record is not an object")
        return Identity.from_dict(payload)

    @staticmethod
    def _row_to_trace(row: tuple) -> Trace:
        return Trace(
            id=row[0],
            operation=row[1],
            input_text=row[2],
            output_text=row[3],
            duration_ms=row[4],
            metadata=json.loads(row[5]),
            created_at=row[6],
        )
