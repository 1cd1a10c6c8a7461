#!/usr/bin/env python3
"""
Entry Store
SQLite-backed persistence for cached responses

Implements:
- get(key) -> CacheEntry | None
- put(key, entry) -> bool
- delete(key) -> bool
- open_store() / close_store() -> process-wide shared handle

Design principles:
- Best effort: a failed read is a cache miss, a failed write is logged and dropped
- Keys are stored exactly as given, no normalization
- Every operation is a single-key statement, committed immediately
"""

import json
import logging
import sqlite3
import threading
import time
import zlib
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator, ValidationError

from .config import load_config
from .models import CacheEntry

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    cache_key TEXT PRIMARY KEY,
    policy TEXT NOT NULL,          -- JSON policy object
    body BLOB,                     -- NULL when the response had no body
    compressed INTEGER DEFAULT 0,  -- 1 = body is zlib-compressed
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
"""

POLICY_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["v", "t", "sh", "ch", "st", "resh", "rescc", "m", "u", "a", "reqcc"],
    "properties": {
        "v": {"type": "integer"},
        "t": {"type": "number"},
        "sh": {"type": "boolean"},
        "ch": {"type": "number"},
        "imm": {"type": "number"},
        "st": {"type": "integer", "minimum": 100, "maximum": 599},
        "resh": {
            "type": "object",
            "properties": {
                "set-cookie": {
                    "type": ["string", "array"],
                    "items": {"type": "string"},
                },
            },
            "additionalProperties": {"type": "string"},
        },
        "rescc": {"$ref": "#/definitions/directives"},
        "m": {"type": "string"},
        "u": {"type": ["string", "null"]},
        "h": {"type": ["string", "null"]},
        "a": {"type": "boolean"},
        "reqh": {"type": ["object", "null"]},
        "reqcc": {"$ref": "#/definitions/directives"},
    },
    "definitions": {
        "directives": {
            "type": "object",
            "additionalProperties": {"type": ["string", "boolean"]},
        },
    },
}

_validator = Draft7Validator(POLICY_SCHEMA)


def validate_policy(policy: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(policy), key=lambda e: str(list(e.path)))
    if errors:
        messages = ", ".join(error.message for error in errors)
        raise ValidationError(f"stored policy validation failed: {messages}")


class EntryStore:
    """
    SQLite store of {cache key -> (policy, body)}.

    Safe to share between threads: one connection, guarded by a lock.
    """

    def __init__(self, db_path: str, compression: bool = True):
        self.db_path = str(db_path)
        self.compression = compression
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

        self.stats = {
            "reads": 0,
            "read_errors": 0,
            "writes": 0,
            "write_errors": 0,
            "deletes": 0,
        }

        try:
            self._connection()
            logger.info(f"EntryStore initialized at {self.db_path}")
        except (OSError, sqlite3.Error) as e:
            logger.error(f"EntryStore unavailable at {self.db_path}, will retry on use: {e}")

    def _connection(self) -> sqlite3.Connection:
        """Open the database on first use; raises OSError/sqlite3.Error if it can't."""
        with self._lock:
            if self.conn is None:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10.0)
                try:
                    conn.row_factory = sqlite3.Row
                    conn.execute("PRAGMA journal_mode=WAL")
                    conn.executescript(SCHEMA)
                    conn.commit()
                except sqlite3.Error:
                    conn.close()
                    raise
                self.conn = conn
            return self.conn

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry stored at ``key``, or None on absence or any failure."""
        try:
            with self._lock:
                row = self._connection().execute(
                    "SELECT policy, body, compressed FROM cache_entries WHERE cache_key = ?",
                    (key,),
                ).fetchone()
            self.stats["reads"] += 1

            if row is None:
                return None

            policy = json.loads(row["policy"])
            validate_policy(policy)

            body = row["body"]
            if body is not None:
                body = bytes(body)
                if row["compressed"]:
                    body = zlib.decompress(body)

            return CacheEntry(policy=policy, body=body)

        except (OSError, sqlite3.Error, ValueError, ValidationError, zlib.error) as e:
            self.stats["read_errors"] += 1
            logger.error(f"Failed to get cached response {key}: {e}")
            return None

    def put(self, key: str, entry: CacheEntry) -> bool:
        """Replace the entry at ``key`` wholesale. Returns False on failure."""
        now = time.time()
        try:
            policy = json.dumps(entry.policy)
            body = entry.body
            compressed = bool(self.compression and body)
            if compressed:
                body = zlib.compress(body)

            with self._lock:
                conn = self._connection()
                conn.execute("""
                    INSERT INTO cache_entries
                    (cache_key, policy, body, compressed, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        policy = excluded.policy,
                        body = excluded.body,
                        compressed = excluded.compressed,
                        updated_at = excluded.updated_at
                """, (key, policy, body, int(compressed), now, now))
                conn.commit()

            self.stats["writes"] += 1
            logger.debug(f"Cached response {key}")
            return True

        except (OSError, sqlite3.Error, TypeError, ValueError, zlib.error) as e:
            self.stats["write_errors"] += 1
            logger.error(f"Failed to cache response {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            with self._lock:
                conn = self._connection()
                conn.execute("DELETE FROM cache_entries WHERE cache_key = ?", (key,))
                conn.commit()
            self.stats["deletes"] += 1
            logger.debug(f"Deleted cached response {key}")
            return True
        except (OSError, sqlite3.Error) as e:
            self.stats["write_errors"] += 1
            logger.error(f"Failed to delete cached response {key}: {e}")
            return False

    def count(self) -> int:
        with self._lock:
            return self._connection().execute("SELECT COUNT(*) AS count FROM cache_entries").fetchone()["count"]

    def keys(self) -> List[str]:
        with self._lock:
            rows = self._connection().execute(
                "SELECT cache_key FROM cache_entries ORDER BY created_at"
            ).fetchall()
        return [row["cache_key"] for row in rows]

    def close(self):
        """Close database connection."""
        if self.conn:
            with self._lock:
                self.conn.close()
            logger.info("EntryStore closed")


_store_instance: Optional[EntryStore] = None
_store_lock = threading.Lock()


def open_store(db_path: str = None, compression: bool = None) -> EntryStore:
    """Get or create the process-wide store."""
    global _store_instance
    with _store_lock:
        if _store_instance is None:
            config = load_config()
            _store_instance = EntryStore(
                db_path or config.storage_path,
                compression=config.compression if compression is None else compression,
            )
        elif db_path is not None and str(db_path) != _store_instance.db_path:
            logger.warning(
                f"Store already open at {_store_instance.db_path}, ignoring requested path {db_path}"
            )
        return _store_instance


def close_store() -> None:
    """Close and forget the process-wide store (orderly shutdown)."""
    global _store_instance
    with _store_lock:
        if _store_instance is not None:
            _store_instance.close()
            _store_instance = None
