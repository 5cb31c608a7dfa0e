"""SQLite database layer for crew-score."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

DEFAULT_DB_PATH = Path.home() / ".crew-score" / "data.db"


class Database:
    """SQLite database manager with WAL mode.

    The connection runs in autocommit mode; multi-statement writes go through
    transaction(), which takes the SQLite write lock up front (BEGIN IMMEDIATE)
    so concurrent writers queue instead of interleaving.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            str(self.db_path), isolation_level=None, check_same_thread=False, timeout=30.0
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.RLock()
        self._tx_depth = 0
        self.init_db()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    score INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                );

                CREATE TABLE IF NOT EXISTS counters (
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    key TEXT NOT NULL DEFAULT '',
                    value INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (user_id, name, key)
                );

                CREATE TABLE IF NOT EXISTS aggregates (
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value TEXT,
                    PRIMARY KEY (user_id, name)
                );

                CREATE TABLE IF NOT EXISTS applied_events (
                    user_id TEXT NOT NULL,
                    dedupe_key TEXT NOT NULL,
                    applied_at TEXT NOT NULL,
                    score_delta INTEGER NOT NULL DEFAULT 0,
                    score_after INTEGER NOT NULL DEFAULT 0,
                    announced INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (user_id, dedupe_key)
                );

                CREATE TABLE IF NOT EXISTS bonus_credits (
                    user_id TEXT NOT NULL,
                    badge_id TEXT NOT NULL,
                    credited_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, badge_id)
                );

                CREATE TABLE IF NOT EXISTS achievements (
                    user_id TEXT NOT NULL,
                    badge_id TEXT NOT NULL,
                    earned_at TEXT NOT NULL,
                    notified INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (user_id, badge_id)
                );

                CREATE TABLE IF NOT EXISTS score_corrections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    reason TEXT,
                    corrected_at TEXT NOT NULL
                );
            """)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically; rolls back on any exception.

        A transaction opened inside another one joins it, so the outermost
        block decides commit or rollback.
        """
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self.conn
                finally:
                    self._tx_depth -= 1
                return
            self.conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")
            finally:
                self._tx_depth = 0

    # -- users -------------------------------------------------------------

    def ensure_user(self, user_id: str, created_at: str) -> None:
        """Create the all-zero user row if missing."""
        with self._lock:
            self.conn.execute(
                "INSERT OR IGNORE INTO users (user_id, score, created_at) VALUES (?, 0, ?)",
                (user_id, created_at),
            )

    def get_user(self, user_id: str) -> dict | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return dict(row) if row else None

    def add_score(self, user_id: str, amount: int, updated_at: str) -> None:
        """Increment (or decrement) the score in place."""
        with self._lock:
            self.conn.execute(
                "UPDATE users SET score = score + ?, updated_at = ? WHERE user_id = ?",
                (amount, updated_at, user_id),
            )

    def get_score(self, user_id: str) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT score FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["score"] if row else 0

    # -- counters and aggregates ----------------------------------------------

    def increment_counter(self, user_id: str, name: str, amount: int, key: str = "") -> int:
        """Per-field increment (upsert). Returns the new value."""
        with self._lock:
            self.conn.execute(
                "INSERT INTO counters (user_id, name, key, value) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(user_id, name, key) DO UPDATE SET value = value + excluded.value",
                (user_id, name, key, amount),
            )
            row = self.conn.execute(
                "SELECT value FROM counters WHERE user_id = ? AND name = ? AND key = ?",
                (user_id, name, key),
            ).fetchone()
        return row["value"]

    def get_counters(self, user_id: str) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT name, key, value FROM counters WHERE user_id = ? ORDER BY name, key",
                (user_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def set_aggregate(self, user_id: str, name: str, value: str | None) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO aggregates (user_id, name, value) VALUES (?, ?, ?) "
                "ON CONFLICT(user_id, name) DO UPDATE SET value = excluded.value",
                (user_id, name, value),
            )

    def get_aggregates(self, user_id: str) -> dict[str, str | None]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT name, value FROM aggregates WHERE user_id = ?", (user_id,)
            ).fetchall()
        return {row["name"]: row["value"] for row in rows}

    # -- dedupe keys -----------------------------------------------------------

    def record_dedupe_key(self, user_id: str, dedupe_key: str, applied_at: str) -> bool:
        """Record a dedupe key. Returns False if it was already present."""
        with self._lock:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO applied_events (user_id, dedupe_key, applied_at) VALUES (?, ?, ?)",
                (user_id, dedupe_key, applied_at),
            )
        return cursor.rowcount == 1

    def set_event_outcome(self, user_id: str, dedupe_key: str, score_delta: int, score_after: int) -> None:
        """Remember what an applied event was worth so a replay can announce it."""
        with self._lock:
            self.conn.execute(
                "UPDATE applied_events SET score_delta = ?, score_after = ? "
                "WHERE user_id = ? AND dedupe_key = ?",
                (score_delta, score_after, user_id, dedupe_key),
            )

    def get_applied_event(self, user_id: str, dedupe_key: str) -> dict | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM applied_events WHERE user_id = ? AND dedupe_key = ?",
                (user_id, dedupe_key),
            ).fetchone()
        return dict(row) if row else None

    def mark_event_announced(self, user_id: str, dedupe_key: str) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE applied_events SET announced = 1 WHERE user_id = ? AND dedupe_key = ?",
                (user_id, dedupe_key),
            )

    # -- badge bonuses ---------------------------------------------------------

    def record_bonus_credit(self, user_id: str, badge_id: str, credited_at: str) -> bool:
        """Record that a badge's bonus was credited. Returns False if it already was.

        Kept apart from applied_events so caller-supplied dedupe keys can never
        collide with bonus bookkeeping.
        """
        with self._lock:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO bonus_credits (user_id, badge_id, credited_at) VALUES (?, ?, ?)",
                (user_id, badge_id, credited_at),
            )
        return cursor.rowcount == 1

    # -- achievements ----------------------------------------------------------

    def insert_achievement(self, user_id: str, badge_id: str, earned_at: str) -> bool:
        """Insert an achievement row. Returns False if the pair already existed."""
        with self._lock:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO achievements (user_id, badge_id, earned_at, notified) "
                "VALUES (?, ?, ?, 0)",
                (user_id, badge_id, earned_at),
            )
        return cursor.rowcount == 1

    def get_achievement(self, user_id: str, badge_id: str) -> dict | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM achievements WHERE user_id = ? AND badge_id = ?",
                (user_id, badge_id),
            ).fetchone()
        return dict(row) if row else None

    def get_achievements(self, user_id: str) -> list[dict]:
        """All achievements for a user, oldest first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM achievements WHERE user_id = ? ORDER BY earned_at, badge_id",
                (user_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def mark_achievement_notified(self, user_id: str, badge_id: str) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE achievements SET notified = 1 WHERE user_id = ? AND badge_id = ?",
                (user_id, badge_id),
            )

    def delete_achievement(self, user_id: str, badge_id: str) -> bool:
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM achievements WHERE user_id = ? AND badge_id = ?",
                (user_id, badge_id),
            )
        return cursor.rowcount > 0

    def delete_achievements(self, user_id: str) -> int:
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM achievements WHERE user_id = ?", (user_id,)
            )
        return cursor.rowcount

    # -- administrative --------------------------------------------------------

    def record_correction(self, user_id: str, amount: int, reason: str, corrected_at: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO score_corrections (user_id, amount, reason, corrected_at) VALUES (?, ?, ?, ?)",
                (user_id, amount, reason, corrected_at),
            )

    def get_corrections(self, user_id: str) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM score_corrections WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self.conn.close()
