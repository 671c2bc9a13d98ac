"""SQLite store for generation records.

Records are append-only: one row per successful generation, never updated
or deleted by the application.  The store answers two questions:

- how many generations a user made inside the trailing quota window
- what a user generated recently (history listing)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

KIND_SPRITES = "sprites"
KIND_IMAGE = "image"


@dataclass(frozen=True)
class GenerationRecord:
    """One completed generation owned by ``user_id``."""

    user_id: str
    prompt: str
    seed: int
    style: str
    kind: str = KIND_SPRITES
    motions: tuple[str, ...] = ()
    atlas_url: str | None = None
    meta_url: str | None = None
    image_url: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        """JSON-friendly representation used by the history endpoint."""
        return {
            "id": self.id,
            "kind": self.kind,
            "prompt": self.prompt,
            "seed": self.seed,
            "style": self.style,
            "motions": list(self.motions),
            "atlasUrl": self.atlas_url,
            "metaUrl": self.meta_url,
            "imageUrl": self.image_url,
            "createdAt": self.created_at.isoformat(),
        }


class GenerationStore:
    """Append-only generation records in a sqlite database.

    Timestamps are stored as UTC ISO-8601 strings, which sort
    chronologically and make the window query a plain string comparison.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info("Generation store ready at %s", self.db_path)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=30)

    def _initialize_db(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS generations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    seed INTEGER NOT NULL,
                    style TEXT NOT NULL,
                    motions TEXT NOT NULL,
                    atlas_url TEXT,
                    meta_url TEXT,
                    image_url TEXT,
                    created_at TEXT NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_generations_user_created
                ON generations(user_id, created_at DESC)
                """)

    def insert(self, record: GenerationRecord) -> GenerationRecord:
        """Persist ``record``.  Raises ``sqlite3.IntegrityError`` on a duplicate id."""
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO generations
                    (id, user_id, kind, prompt, seed, style, motions,
                     atlas_url, meta_url, image_url, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.user_id,
                    record.kind,
                    record.prompt,
                    record.seed,
                    record.style,
                    json.dumps(list(record.motions)),
                    record.atlas_url,
                    record.meta_url,
                    record.image_url,
                    _to_utc(record.created_at).isoformat(),
                ),
            )
        logger.info("Recorded %s generation %s for user %s", record.kind, record.id, record.user_id)
        return record

    def count_since(self, user_id: str, since: datetime) -> int:
        """Count the user's records created at or after ``since``."""
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM generations WHERE user_id = ? AND created_at >= ?",
                (user_id, _to_utc(since).isoformat()),
            ).fetchone()
        return int(row[0])

    def count_in_window(self, user_id: str, hours: int = 24, now: datetime | None = None) -> int:
        """Count the user's records in the trailing ``hours`` window."""
        now = now or datetime.now(timezone.utc)
        return self.count_since(user_id, now - timedelta(hours=hours))

    def list_for_user(self, user_id: str, limit: int = 50) -> list[GenerationRecord]:
        """Return the user's most recent records, newest first."""
        with closing(self._connect()) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                """
                SELECT * FROM generations WHERE user_id = ?
                ORDER BY created_at DESC LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [_row_to_record(row) for row in rows]


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_record(row: sqlite3.Row) -> GenerationRecord:
    return GenerationRecord(
        id=row["id"],
        user_id=row["user_id"],
        kind=row["kind"],
        prompt=row["prompt"],
        seed=row["seed"],
        style=row["style"],
        motions=tuple(json.loads(row["motions"])),
        atlas_url=row["atlas_url"],
        meta_url=row["meta_url"],
        image_url=row["image_url"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )
