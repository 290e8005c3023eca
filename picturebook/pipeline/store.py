"""
Durable job store backed by SQLite.

One long-lived connection per store instance is the pipeline's session, so
a write is visible to the next read through the same store. When a required
key is still missing, ``read_progress`` falls back to a fresh read-only
connection before giving up with ``PersistenceInconsistencyError``.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from picturebook.common import (
    CreditExhaustedError,
    NotFoundError,
    PersistenceInconsistencyError,
    StageBusyError,
    ValidationError,
)
from picturebook.story_generation import BookIntake

from .progress import LAST_ERROR_KEY, JobStatus, Progress, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.join("data", "picturebook.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    settings_json TEXT NOT NULL,
    characters_json TEXT NOT NULL,
    regeneration_credits INTEGER NOT NULL DEFAULT 0 CHECK (regeneration_credits >= 0),
    progress_json TEXT NOT NULL,
    cover_url TEXT,
    book_json TEXT,
    illustration_metadata_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, created_at);
CREATE TABLE IF NOT EXISTS stage_leases (
    job_id TEXT NOT NULL,
    stage_key TEXT NOT NULL,
    holder TEXT NOT NULL,
    expires_at REAL NOT NULL,
    PRIMARY KEY (job_id, stage_key)
);
"""

# target status -> statuses it may be entered from
_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PAID: frozenset({JobStatus.DRAFT}),
    JobStatus.GENERATING: frozenset({JobStatus.PAID, JobStatus.FAILED}),
    JobStatus.COMPLETE: frozenset({JobStatus.GENERATING}),
    JobStatus.FAILED: frozenset({JobStatus.PAID, JobStatus.GENERATING}),
}

TEXT_PAGE_TYPES = frozenset({"title", "story-text", "back"})


@dataclass
class BookJob:
    """A job row with its decoded intake and progress."""

    id: str
    status: JobStatus
    intake: BookIntake
    regeneration_credits: int
    progress: Progress
    cover_url: str | None = None
    book: dict[str, Any] | None = None
    illustration_metadata: list[dict[str, Any]] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None


def _loads(text: str | None, default: Any) -> Any:
    if text is None:
        return default
    return json.loads(text)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


class SQLiteJobStore:
    """
    Job persistence with shallow-merge progress updates and atomic credit accounting.

    Parameters
    ----------
    db_path:
        SQLite file path. Falls back to ``PICTUREBOOK_DB_PATH`` and then ``data/picturebook.db``.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = str(db_path or os.getenv("PICTUREBOOK_DB_PATH") or DEFAULT_DB_PATH)
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = self._connect()
        self._conn.executescript(SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        return conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _fetch_row(self, conn: sqlite3.Connection, job_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Job {job_id!r} does not exist.", entity=job_id)
        return row

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> BookJob:
        intake = BookIntake.from_mapping(
            {
                "settings": _loads(row["settings_json"], {}),
                "characters": _loads(row["characters_json"], []),
            }
        )
        return BookJob(
            id=row["id"],
            status=JobStatus(row["status"]),
            intake=intake,
            regeneration_credits=int(row["regeneration_credits"]),
            progress=Progress.from_dict(_loads(row["progress_json"], {})),
            cover_url=row["cover_url"],
            book=_loads(row["book_json"], None),
            illustration_metadata=_loads(row["illustration_metadata_json"], []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------ jobs

    def create_job(
        self,
        intake: BookIntake,
        *,
        job_id: str | None = None,
        status: JobStatus = JobStatus.DRAFT,
    ) -> BookJob:
        job_id = job_id or uuid.uuid4().hex
        now = utc_now()
        progress = Progress(message="Waiting to start")
        with self._transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO jobs(id, status, settings_json, characters_json,
                                     regeneration_credits, progress_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        job_id,
                        JobStatus(status).value,
                        _dumps(intake.settings.to_dict()),
                        _dumps([character.to_dict() for character in intake.characters]),
                        _dumps(progress.to_dict()),
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError(f"Job {job_id!r} already exists.", entity=job_id) from exc
        logger.info("Created job %s with %d characters.", job_id, len(intake.characters))
        return self.load_job(job_id)

    def load_job(self, job_id: str) -> BookJob:
        with self._lock:
            return self._row_to_job(self._fetch_row(self._conn, job_id))

    def advance_status(self, job_id: str, status: JobStatus | str) -> BookJob:
        """
        Move a job forward (draft, paid, generating, complete), or to failed.

        ``failed -> generating`` is the one backward edge: an explicit resume.
        Re-entering the current status is a no-op.
        """
        target = JobStatus(status)
        with self._transaction() as conn:
            row = self._fetch_row(conn, job_id)
            current = JobStatus(row["status"])
            if current == target:
                return self._row_to_job(row)
            if current not in _ALLOWED_TRANSITIONS.get(target, frozenset()):
                raise ValidationError(
                    f"Cannot move job from {current.value!r} to {target.value!r}.",
                    entity=job_id,
                )
            progress = Progress.from_dict(_loads(row["progress_json"], {}))
            if target == JobStatus.GENERATING and progress.started_at is None:
                progress.started_at = utc_now()
            conn.execute(
                "UPDATE jobs SET status = ?, progress_json = ?, updated_at = ? WHERE id = ? AND status = ?",
                (target.value, _dumps(progress.to_dict()), utc_now(), job_id, current.value),
            )
            row = self._fetch_row(conn, job_id)
        logger.info("Job %s: %s -> %s", job_id, current.value, target.value)
        return self._row_to_job(row)

    def pin_scene_count(self, job_id: str, default: int) -> BookJob:
        """
        Store ``default`` as the job's scene count unless one is already recorded.

        Once pinned, the count never changes, whatever settings later processes run with.
        """
        if default < 1:
            raise ValidationError("Scene count must be at least 1.", entity=job_id)
        with self._transaction() as conn:
            row = self._fetch_row(conn, job_id)
            settings = _loads(row["settings_json"], {})
            if settings.get("sceneCount"):
                return self._row_to_job(row)
            settings["sceneCount"] = int(default)
            conn.execute(
                "UPDATE jobs SET settings_json = ?, updated_at = ? WHERE id = ?",
                (_dumps(settings), utc_now(), job_id),
            )
            row = self._fetch_row(conn, job_id)
        logger.info("Job %s: scene count pinned to %d.", job_id, default)
        return self._row_to_job(row)

    def claim_next_paid_job(self, *, stale_after: float | None = None) -> str | None:
        """
        Atomically move the oldest paid job to generating and return its id.

        With ``stale_after``, a ``generating`` job untouched for that many seconds
        (its worker died) is claimed as well.
        """
        with self._transaction() as conn:
            if stale_after is None:
                row = conn.execute(
                    "SELECT id, status, progress_json FROM jobs WHERE status = ? "
                    "ORDER BY created_at, id LIMIT 1",
                    (JobStatus.PAID.value,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT id, status, progress_json FROM jobs "
                    "WHERE status = ? OR (status = ? AND updated_at < ?) "
                    "ORDER BY created_at, id LIMIT 1",
                    (JobStatus.PAID.value, JobStatus.GENERATING.value, utc_now(-stale_after)),
                ).fetchone()
            if row is None:
                return None
            if row["status"] == JobStatus.GENERATING.value:
                logger.warning("Reclaiming stale job %s left in generating.", row["id"])
            progress = Progress.from_dict(_loads(row["progress_json"], {}))
            progress.started_at = progress.started_at or utc_now()
            conn.execute(
                "UPDATE jobs SET status = ?, progress_json = ?, updated_at = ? WHERE id = ? AND status = ?",
                (
                    JobStatus.GENERATING.value,
                    _dumps(progress.to_dict()),
                    utc_now(),
                    row["id"],
                    row["status"],
                ),
            )
        logger.info("Claimed job %s for generation.", row["id"])
        return row["id"]

    def touch_job(self, job_id: str) -> None:
        """Record activity on a running job so workers do not treat it as stale."""
        with self._transaction() as conn:
            cursor = conn.execute("UPDATE jobs SET updated_at = ? WHERE id = ?", (utc_now(), job_id))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Job {job_id!r} does not exist.", entity=job_id)

    # -------------------------------------------------------------- progress

    def read_progress(self, job_id: str, *, require_keys: Iterable[str] = ()) -> Progress:
        """
        Read progress through the session; fall back to a direct read if keys are missing.
        """
        required = list(require_keys)
        with self._lock:
            progress = Progress.from_dict(
                _loads(self._fetch_row(self._conn, job_id)["progress_json"], {})
            )
        missing = [key for key in required if key not in progress.data]
        if not missing:
            return progress

        logger.warning(
            "Job %s: keys %s not visible through the session; reading directly.", job_id, missing
        )
        progress = self.read_progress_direct(job_id)
        still_missing = [key for key in required if key not in progress.data]
        if still_missing:
            raise PersistenceInconsistencyError(
                f"Progress keys {still_missing} are missing after a direct read.",
                entity=job_id,
                details={"missingKeys": still_missing},
            )
        return progress

    def read_progress_direct(self, job_id: str) -> Progress:
        """Read progress through a fresh read-only connection, bypassing the session."""
        uri = Path(self.db_path).resolve().as_uri() + "?mode=ro"
        conn = sqlite3.connect(uri, uri=True, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            row = self._fetch_row(conn, job_id)
            return Progress.from_dict(_loads(row["progress_json"], {}))
        finally:
            conn.close()

    def _write_progress(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        progress: Progress,
        *,
        stage: str | None,
        stage_progress: int | None,
        message: str | None,
        cover_url: str | None = None,
    ) -> None:
        if stage is not None:
            progress.stage = stage
        if stage_progress is not None:
            progress.stage_progress = max(0, min(100, int(stage_progress)))
        if message is not None:
            progress.message = message
        if cover_url is not None:
            conn.execute(
                "UPDATE jobs SET cover_url = ? WHERE id = ?",
                (cover_url, job_id),
            )
        conn.execute(
            "UPDATE jobs SET progress_json = ?, updated_at = ? WHERE id = ?",
            (_dumps(progress.to_dict()), utc_now(), job_id),
        )

    def merge_progress_data(
        self,
        job_id: str,
        patch: Mapping[str, Any],
        *,
        stage: str | None = None,
        stage_progress: int | None = None,
        message: str | None = None,
        cover_url: str | None = None,
    ) -> Progress:
        """
        Shallow-union ``patch`` into ``progress.data`` and update stage fields atomically.

        Keys are never removed; the write is verified readable before returning.
        """
        with self._transaction() as conn:
            row = self._fetch_row(conn, job_id)
            progress = Progress.from_dict(_loads(row["progress_json"], {}))
            progress.data = {**progress.data, **patch}
            self._write_progress(
                conn,
                job_id,
                progress,
                stage=stage,
                stage_progress=stage_progress,
                message=message,
                cover_url=cover_url,
            )
        return self.read_progress(job_id, require_keys=patch.keys())

    def set_data_list_item(
        self,
        job_id: str,
        key: str,
        index: int,
        value: Any,
        *,
        size: int,
        stage: str | None = None,
        stage_progress: int | None = None,
        message: str | None = None,
    ) -> Progress:
        """Set one slot of a list-valued data key inside a single transaction."""
        if not 0 <= index < size:
            raise ValidationError(f"Index {index} outside 0..{size - 1} for {key!r}.", entity=job_id)
        with self._transaction() as conn:
            row = self._fetch_row(conn, job_id)
            progress = Progress.from_dict(_loads(row["progress_json"], {}))
            items = list(progress.data.get(key) or [])
            if len(items) < size:
                items.extend([None] * (size - len(items)))
            items[index] = value
            progress.data = {**progress.data, key: items}
            self._write_progress(
                conn,
                job_id,
                progress,
                stage=stage,
                stage_progress=stage_progress,
                message=message,
            )
        progress = self.read_progress(job_id, require_keys=[key])
        stored = progress.data.get(key) or []
        if index >= len(stored) or stored[index] is None:
            progress = self.read_progress_direct(job_id)
            stored = progress.data.get(key) or []
            if index >= len(stored) or stored[index] is None:
                raise PersistenceInconsistencyError(
                    f"{key}[{index}] is missing after a direct read.", entity=job_id
                )
        return progress

    # ---------------------------------------------------------------- leases

    def acquire_lease(self, job_id: str, stage_key: str, holder: str, *, ttl: float) -> bool:
        now = time.time()
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM stage_leases WHERE job_id = ? AND stage_key = ? AND expires_at <= ?",
                (job_id, stage_key, now),
            )
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO stage_leases(job_id, stage_key, holder, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (job_id, stage_key, holder, now + ttl),
            )
            return cursor.rowcount == 1

    def release_lease(self, job_id: str, stage_key: str, holder: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM stage_leases WHERE job_id = ? AND stage_key = ? AND holder = ?",
                (job_id, stage_key, holder),
            )

    @contextmanager
    def stage_lease(
        self,
        job_id: str,
        stage_key: str,
        *,
        ttl: float,
        stage: str | None = None,
        entity: str | None = None,
    ) -> Iterator[str]:
        """Hold the single-flight lease for one stage instance, or raise ``StageBusyError``."""
        holder = uuid.uuid4().hex
        if not self.acquire_lease(job_id, stage_key, holder, ttl=ttl):
            raise StageBusyError(
                f"Another invocation is already running {stage_key}.",
                stage=stage,
                entity=entity,
            )
        try:
            yield holder
        finally:
            self.release_lease(job_id, stage_key, holder)

    # ------------------------------------------------------------ completion

    def complete_job(
        self,
        job_id: str,
        *,
        book: Mapping[str, Any],
        illustration_metadata: list[dict[str, Any]],
        regeneration_credits: int,
        message: str = "Your book is ready",
    ) -> BookJob:
        """Store the finished book and mark the job complete; progress data is kept."""
        with self._transaction() as conn:
            row = self._fetch_row(conn, job_id)
            current = JobStatus(row["status"])
            if current != JobStatus.GENERATING:
                raise ValidationError(
                    f"Cannot complete a job in status {current.value!r}.", entity=job_id
                )
            progress = Progress.from_dict(_loads(row["progress_json"], {}))
            progress.stage = "complete"
            progress.stage_progress = 100
            progress.message = message
            conn.execute(
                """
                UPDATE jobs
                SET status = ?, book_json = ?, illustration_metadata_json = ?,
                    regeneration_credits = ?, progress_json = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    JobStatus.COMPLETE.value,
                    _dumps(dict(book)),
                    _dumps(illustration_metadata),
                    regeneration_credits,
                    _dumps(progress.to_dict()),
                    utc_now(),
                    job_id,
                    JobStatus.GENERATING.value,
                ),
            )
            row = self._fetch_row(conn, job_id)
        logger.info("Job %s complete with %d credits.", job_id, regeneration_credits)
        return self._row_to_job(row)

    def mark_failed(self, job_id: str, *, stage: str | None, message: str, entity: str | None = None) -> None:
        """Record a failure; the job stays resumable via ``failed -> generating``."""
        with self._transaction() as conn:
            row = self._fetch_row(conn, job_id)
            current = JobStatus(row["status"])
            progress = Progress.from_dict(_loads(row["progress_json"], {}))
            progress.message = message
            progress.data = {
                **progress.data,
                LAST_ERROR_KEY: {"stage": stage, "entity": entity, "message": message, "at": utc_now()},
            }
            new_status = JobStatus.FAILED if current in _ALLOWED_TRANSITIONS[JobStatus.FAILED] else current
            conn.execute(
                "UPDATE jobs SET status = ?, progress_json = ?, updated_at = ? WHERE id = ?",
                (new_status.value, _dumps(progress.to_dict()), utc_now(), job_id),
            )
        logger.warning("Job %s failed at %s (%s): %s", job_id, stage, entity, message)

    # ----------------------------------------------------------- regeneration

    def regeneration_credits(self, job_id: str) -> int:
        with self._lock:
            return int(self._fetch_row(self._conn, job_id)["regeneration_credits"])

    def consume_regeneration_credit(self, job_id: str) -> int:
        """
        Atomically take one credit from a complete job and return the remaining balance.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET regeneration_credits = regeneration_credits - 1, updated_at = ?
                WHERE id = ? AND status = ? AND regeneration_credits > 0
                """,
                (utc_now(), job_id, JobStatus.COMPLETE.value),
            )
            row = self._fetch_row(conn, job_id)
            if cursor.rowcount != 1:
                if row["status"] != JobStatus.COMPLETE.value:
                    raise ValidationError(
                        "Illustrations can only be regenerated on a complete book.", entity=job_id
                    )
                raise CreditExhaustedError(
                    "No regeneration credits left for this book.", entity=job_id
                )
            return int(row["regeneration_credits"])

    def refund_regeneration_credit(self, job_id: str) -> int:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE jobs SET regeneration_credits = regeneration_credits + 1, updated_at = ?
                WHERE id = ?
                """,
                (utc_now(), job_id),
            )
            return int(self._fetch_row(conn, job_id)["regeneration_credits"])

    def replace_scene_illustration(
        self,
        job_id: str,
        scene_number: int,
        *,
        illustration_url: str,
        seed: int,
    ) -> dict[str, Any]:
        """Swap one scene's illustration in the stored book and its metadata."""
        with self._transaction() as conn:
            row = self._fetch_row(conn, job_id)
            book = _loads(row["book_json"], None)
            if book is None:
                raise NotFoundError("This job has no finished book yet.", entity=job_id)
            metadata = _loads(row["illustration_metadata_json"], [])

            pages = [
                page
                for page in book.get("pages", [])
                if page.get("type") == "story-illustration" and page.get("sceneNumber") == scene_number
            ]
            entries = [entry for entry in metadata if entry.get("sceneNumber") == scene_number]
            if not pages or not entries:
                raise NotFoundError(
                    f"Scene {scene_number} has no illustration to replace.",
                    entity=f"scene {scene_number}",
                )
            for page in pages:
                page["illustrationUrl"] = illustration_url
            for entry in entries:
                entry["seed"] = seed
                entry["illustrationUrl"] = illustration_url

            conn.execute(
                """
                UPDATE jobs SET book_json = ?, illustration_metadata_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (_dumps(book), _dumps(metadata), utc_now(), job_id),
            )
        return book

    def update_page_text(self, job_id: str, page_number: int, text: str) -> dict[str, Any]:
        """Replace the text of one text-bearing page of the stored book."""
        with self._transaction() as conn:
            row = self._fetch_row(conn, job_id)
            book = _loads(row["book_json"], None)
            if book is None:
                raise NotFoundError("This job has no finished book yet.", entity=job_id)
            page = next(
                (item for item in book.get("pages", []) if item.get("pageNumber") == page_number),
                None,
            )
            if page is None:
                raise NotFoundError(f"Page {page_number} does not exist.", entity=f"page {page_number}")
            if page.get("type") not in TEXT_PAGE_TYPES:
                raise ValidationError(
                    f"Page {page_number} ({page.get('type')}) does not carry text.",
                    entity=f"page {page_number}",
                )
            page["text"] = text
            conn.execute(
                "UPDATE jobs SET book_json = ?, updated_at = ? WHERE id = ?",
                (_dumps(book), utc_now(), job_id),
            )
        return book
