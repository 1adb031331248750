"""
Database module for cl-batch-open

Handles SQLite persistence for:
- Channel candidates (graph metrics, sources, channel history)
- Rejections (append-only, one row per rejection)
- Batch open history (one audit record per execution attempt)
- Runtime config overrides

Every read goes to SQLite. The batch opener re-plans right after writing
rejections and must observe them, so nothing here is cached.
"""

import json
import os
import sqlite3
import time
from typing import Any, Dict, List, Optional

from .models import (
    ChannelCandidate,
    ChannelHistory,
    OpenHistory,
    Rejection,
    RejectionReason,
)


class Database:
    """
    SQLite database manager for the batch open plugin.

    Acts as the candidate store and history store of the batch opener.
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # Candidates - one row per peer, list-valued fields as JSON
        conn.execute("""
            CREATE TABLE IF NOT EXISTS candidates (
                pubkey TEXT PRIMARY KEY,
                alias TEXT NOT NULL DEFAULT '',
                sources TEXT NOT NULL,           -- JSON list of tags
                added_at INTEGER NOT NULL,
                channels INTEGER NOT NULL DEFAULT 0,
                capacity_sats INTEGER NOT NULL DEFAULT 0,
                last_update INTEGER NOT NULL DEFAULT 0,
                distance INTEGER,
                history TEXT NOT NULL DEFAULT '[]',  -- JSON list of ChannelHistory
                min_channel_size INTEGER
            )
        """)

        # Rejections - append-only, never pruned
        conn.execute("""
            CREATE TABLE IF NOT EXISTS rejections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pubkey TEXT NOT NULL,
                date INTEGER NOT NULL,
                reason TEXT NOT NULL,
                details TEXT,
                min_channel_size INTEGER
            )
        """)

        # Batch open audit log
        conn.execute("""
            CREATE TABLE IF NOT EXISTS open_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                date INTEGER NOT NULL,
                plan TEXT NOT NULL,     -- JSON OpenPlan
                results TEXT NOT NULL   -- JSON list of OpenResult
            )
        """)

        # Runtime config overrides (batchopen-config set)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS config_overrides (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS config_meta (
                key TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_rejections_pubkey ON rejections(pubkey, id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_open_history_date ON open_history(date)")

        self.plugin.log("Database initialized successfully")

    # =========================================================================
    # Candidate Methods
    # =========================================================================

    def _rejections_by_pubkey(self, pubkey: Optional[str] = None) -> Dict[str, List[Rejection]]:
        conn = self._get_connection()
        if pubkey is None:
            rows = conn.execute("SELECT * FROM rejections ORDER BY id").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM rejections WHERE pubkey = ? ORDER BY id", (pubkey,)
            ).fetchall()

        result: Dict[str, List[Rejection]] = {}
        for row in rows:
            try:
                reason = RejectionReason(row["reason"])
            except ValueError:
                # Unknown reason written by a newer version; treat as permanent
                reason = RejectionReason.REJECTED
            result.setdefault(row["pubkey"], []).append(Rejection(
                date=row["date"],
                reason=reason,
                details=row["details"],
                min_channel_size=row["min_channel_size"],
            ))
        return result

    def _row_to_candidate(self, row: sqlite3.Row, rejections: List[Rejection]) -> ChannelCandidate:
        return ChannelCandidate(
            pubkey=row["pubkey"],
            alias=row["alias"],
            sources=json.loads(row["sources"]),
            added_at=row["added_at"],
            channels=row["channels"],
            capacity_sats=row["capacity_sats"],
            last_update=row["last_update"],
            distance=row["distance"],
            history=[ChannelHistory.from_dict(h) for h in json.loads(row["history"])],
            rejections=rejections,
            min_channel_size=row["min_channel_size"],
        )

    def load_candidates(self) -> List[ChannelCandidate]:
        """Load all candidates with their full rejection history."""
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM candidates ORDER BY added_at, pubkey").fetchall()
        rejections = self._rejections_by_pubkey()
        return [self._row_to_candidate(row, rejections.get(row["pubkey"], [])) for row in rows]

    def get_candidate(self, pubkey: str) -> Optional[ChannelCandidate]:
        """Get a single candidate by pubkey."""
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM candidates WHERE pubkey = ?", (pubkey,)).fetchone()
        if not row:
            return None
        rejections = self._rejections_by_pubkey(pubkey)
        return self._row_to_candidate(row, rejections.get(pubkey, []))

    def _insert_rejection(self, pubkey: str, rejection: Rejection):
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO rejections (pubkey, date, reason, details, min_channel_size)
            VALUES (?, ?, ?, ?, ?)
        """, (pubkey, rejection.date, rejection.reason.value,
              rejection.details, rejection.min_channel_size))

    def _write_candidate(self, candidate: ChannelCandidate):
        conn = self._get_connection()
        conn.execute("""
            INSERT OR REPLACE INTO candidates
            (pubkey, alias, sources, added_at, channels, capacity_sats,
             last_update, distance, history, min_channel_size)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            candidate.pubkey,
            candidate.alias,
            json.dumps(candidate.sources),
            candidate.added_at,
            candidate.channels,
            candidate.capacity_sats,
            candidate.last_update,
            candidate.distance,
            json.dumps([h.to_dict() for h in candidate.history]),
            candidate.min_channel_size,
        ))

    def upsert_candidate(self, candidate: ChannelCandidate) -> ChannelCandidate:
        """
        Add or merge a candidate.

        On merge: sources are unioned (order kept), history is deduplicated by
        channel_id, rejections are appended, added_at is preserved, graph
        metrics are overwritten, and min_channel_size is recomputed as the
        max over all min_channel_size rejections.

        Returns:
            The stored candidate after the merge
        """
        existing = self.get_candidate(candidate.pubkey)

        if existing is None:
            merged = ChannelCandidate(
                pubkey=candidate.pubkey,
                alias=candidate.alias,
                sources=list(dict.fromkeys(candidate.sources)),
                added_at=candidate.added_at,
                channels=candidate.channels,
                capacity_sats=candidate.capacity_sats,
                last_update=candidate.last_update,
                distance=candidate.distance,
                history=list(candidate.history),
                rejections=list(candidate.rejections),
            )
            new_rejections = list(candidate.rejections)
        else:
            known_channels = {h.channel_id for h in existing.history}
            merged = ChannelCandidate(
                pubkey=candidate.pubkey,
                alias=candidate.alias or existing.alias,
                sources=list(dict.fromkeys(existing.sources + candidate.sources)),
                added_at=existing.added_at,
                channels=candidate.channels,
                capacity_sats=candidate.capacity_sats,
                last_update=candidate.last_update,
                distance=candidate.distance if candidate.distance is not None else existing.distance,
                history=existing.history + [
                    h for h in candidate.history if h.channel_id not in known_channels
                ],
                rejections=existing.rejections + list(candidate.rejections),
            )
            new_rejections = list(candidate.rejections)

        merged.min_channel_size = merged.learned_minimum()

        self._write_candidate(merged)
        for rejection in new_rejections:
            self._insert_rejection(merged.pubkey, rejection)

        return merged

    def add_rejection(self, pubkey: str, rejection: Rejection) -> bool:
        """
        Append a rejection to a candidate.

        Returns:
            False if the candidate is unknown (nothing written)
        """
        conn = self._get_connection()
        row = conn.execute(
            "SELECT min_channel_size FROM candidates WHERE pubkey = ?", (pubkey,)
        ).fetchone()
        if not row:
            self.plugin.log(f"Rejection for unknown candidate {pubkey[:12]}... ignored", level='debug')
            return False

        self._insert_rejection(pubkey, rejection)

        if rejection.reason == RejectionReason.MIN_CHANNEL_SIZE and rejection.min_channel_size:
            current = row["min_channel_size"] or 0
            if rejection.min_channel_size > current:
                conn.execute(
                    "UPDATE candidates SET min_channel_size = ? WHERE pubkey = ?",
                    (rejection.min_channel_size, pubkey)
                )
        return True

    def remove_candidate(self, pubkey: str) -> bool:
        """Remove a candidate. Its rejection log is kept for audit."""
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM candidates WHERE pubkey = ?", (pubkey,))
        return cursor.rowcount > 0

    def clear_source(self, source: str) -> int:
        """
        Drop a discovery tag from every candidate (a collector re-run).

        Candidates left without any source are removed.

        Returns:
            Number of candidates changed or removed
        """
        conn = self._get_connection()
        rows = conn.execute("SELECT pubkey, sources FROM candidates").fetchall()
        affected = 0
        for row in rows:
            sources = json.loads(row["sources"])
            if source not in sources:
                continue
            remaining = [s for s in sources if s != source]
            if remaining:
                conn.execute(
                    "UPDATE candidates SET sources = ? WHERE pubkey = ?",
                    (json.dumps(remaining), row["pubkey"])
                )
            else:
                conn.execute("DELETE FROM candidates WHERE pubkey = ?", (row["pubkey"],))
            affected += 1

        if affected:
            self.plugin.log(f"Cleared source '{source}' from {affected} candidates")
        return affected

    # =========================================================================
    # Open History Methods
    # =========================================================================

    def append_open_history(self, history: OpenHistory) -> int:
        """Persist one batch open audit record. Returns its row id."""
        conn = self._get_connection()
        cursor = conn.execute("""
            INSERT INTO open_history (date, plan, results)
            VALUES (?, ?, ?)
        """, (
            history.date,
            json.dumps(history.plan.to_dict()),
            json.dumps([r.to_dict() for r in history.results]),
        ))
        return cursor.lastrowid

    def get_open_history(self, since: Optional[int] = None, limit: int = 50) -> List[OpenHistory]:
        """Most recent audit records first."""
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT * FROM open_history
            WHERE date >= ?
            ORDER BY date DESC, id DESC
            LIMIT ?
        """, (since or 0, limit)).fetchall()
        return [
            OpenHistory.from_dict({
                "date": row["date"],
                "plan": json.loads(row["plan"]),
                "results": json.loads(row["results"]),
            })
            for row in rows
        ]

    # =========================================================================
    # Config Override Methods
    # =========================================================================

    def get_all_config_overrides(self) -> Dict[str, str]:
        conn = self._get_connection()
        rows = conn.execute("SELECT key, value FROM config_overrides").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def get_config_override(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute("SELECT value FROM config_overrides WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def get_config_version(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT value FROM config_meta WHERE key = 'version'").fetchone()
        return row["value"] if row else 0

    def set_config_override(self, key: str, value: str) -> int:
        """Store an override and bump the config version. Returns the new version."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO config_overrides (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
        """, (key, value, int(time.time())))

        version = self.get_config_version() + 1
        conn.execute("""
            INSERT INTO config_meta (key, value) VALUES ('version', ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """, (version,))
        return version

    def delete_config_override(self, key: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM config_overrides WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
