"""
SQLite-backed job store.

Every mutation is a single SQL statement so the dispatcher (writer) and the
status API / chat commands (readers) never race on a read-modify-write.
Jobs are never deleted; terminal rows stay as audit history.

A job left in 'processing' after a crash is not resumed automatically:
the browser session it was driving is gone. See scripts/recover_jobs.py.
"""

import logging
import os
from datetime import datetime, timedelta, timezone

import aiosqlite

from models.job import (
    COMPLETED,
    FAILED,
    MEDIA_KINDS,
    PENDING,
    PROCESSING,
    STATUSES,
    TRANSITIONS,
    Artifact,
    Job,
    OriginRef,
)

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "notebooklm_relay.db")

ARTIFACT_TTL = timedelta(days=7)

_CREATE_REQUESTS = """
CREATE TABLE IF NOT EXISTS requests (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    url             TEXT    NOT NULL,
    origin_channel  TEXT    NOT NULL,
    origin_thread   TEXT    NOT NULL,
    origin_user     TEXT    NOT NULL,
    workspace_id    TEXT,
    status          TEXT    NOT NULL DEFAULT 'pending',
    progress        INTEGER NOT NULL DEFAULT 0,
    current_step    TEXT,
    error_message   TEXT,
    ack_message_ref TEXT,
    created_at      TEXT    NOT NULL,
    started_at      TEXT,
    completed_at    TEXT
)
"""

_CREATE_MEDIA = """
CREATE TABLE IF NOT EXISTS media (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id  INTEGER NOT NULL,
    media_type  TEXT    NOT NULL CHECK (media_type IN ('audio', 'video')),
    filename    TEXT    NOT NULL,
    storage_key TEXT    NOT NULL,
    public_ref  TEXT    NOT NULL,
    byte_size   INTEGER NOT NULL,
    expires_at  TEXT    NOT NULL,
    created_at  TEXT    NOT NULL,
    UNIQUE (request_id, media_type),
    FOREIGN KEY (request_id) REFERENCES requests(id)
)
"""

_CREATE_STATUS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_requests_status_created
ON requests (status, created_at)
"""


class NotFoundError(Exception):
    """Raised when a job id does not exist in the store."""


class InvalidTransitionError(Exception):
    """Raised when a status change would break pending → processing → terminal."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["id"],
        url=row["url"],
        origin=OriginRef(
            channel=row["origin_channel"],
            thread=row["origin_thread"],
            user=row["origin_user"],
            workspace=row["workspace_id"],
        ),
        status=row["status"],
        progress=row["progress"],
        current_step=row["current_step"],
        error_message=row["error_message"],
        ack_message_ref=row["ack_message_ref"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _row_to_artifact(row: aiosqlite.Row) -> Artifact:
    return Artifact(
        id=row["id"],
        job_id=row["request_id"],
        kind=row["media_type"],
        filename=row["filename"],
        storage_key=row["storage_key"],
        public_ref=row["public_ref"],
        byte_size=row["byte_size"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


class JobStore:
    """
    Durable record of jobs and their artifacts.

    Opens a short-lived connection per call, so one instance can be shared
    by the dispatcher, the chat handlers and the HTTP API.
    """

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path

    async def init(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode = WAL")
            await db.execute(_CREATE_REQUESTS)
            await db.execute(_CREATE_MEDIA)
            await db.execute(_CREATE_STATUS_INDEX)
            await db.commit()

    # ── Jobs ──────────────────────────────────────────────────────────────────

    async def enqueue(self, url: str, origin: OriginRef) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                """
                INSERT INTO requests (
                    url, origin_channel, origin_thread, origin_user,
                    workspace_id, status, created_at
                )
                VALUES (?, ?, ?, ?, ?, 'pending', ?)
                """,
                (
                    url,
                    origin.channel,
                    origin.thread,
                    origin.user,
                    origin.workspace,
                    _now().isoformat(),
                ),
            )
            await db.commit()
            job_id = cur.lastrowid

        logger.info(
            "Job added to queue",
            extra={"job_id": job_id, "url": url, "channel": origin.channel},
        )
        return job_id

    async def claim_next(self) -> Job | None:
        """Return the oldest pending job without changing its status."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT * FROM requests
                WHERE status = 'pending'
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """
            ) as cur:
                row = await cur.fetchone()
                return _row_to_job(row) if row else None

    async def get_job(self, job_id: int) -> Job | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM requests WHERE id = ?", (job_id,)
            ) as cur:
                row = await cur.fetchone()
                return _row_to_job(row) if row else None

    async def list_by_status(self, status: str) -> list[Job]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM requests WHERE status = ? ORDER BY created_at ASC, id ASC",
                (status,),
            ) as cur:
                return [_row_to_job(r) for r in await cur.fetchall()]

    async def update_status(
        self,
        job_id: int,
        status: str,
        progress: int | None = None,
        current_step: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """
        Partial update in one statement.

        Entering 'processing' stamps started_at once; entering a terminal
        status stamps completed_at. Progress only ever moves forward.
        """
        if status not in STATUSES:
            raise ValueError(f"Unknown status: {status!r}")

        now = _now().isoformat()
        updates = ["status = ?"]
        values: list = [status]

        if progress is not None:
            updates.append("progress = MAX(progress, ?)")
            values.append(max(0, min(100, progress)))
        if current_step is not None:
            updates.append("current_step = ?")
            values.append(current_step)
        if error_message is not None:
            updates.append("error_message = ?")
            values.append(error_message)
        if status == PROCESSING:
            updates.append("started_at = COALESCE(started_at, ?)")
            values.append(now)
        if status in (COMPLETED, FAILED):
            updates.append("completed_at = ?")
            values.append(now)

        allowed_from = [s for s, nxt in TRANSITIONS.items() if status in nxt]
        placeholders = ", ".join("?" for _ in allowed_from)

        changed = 0
        if allowed_from:
            async with aiosqlite.connect(self.db_path) as db:
                cur = await db.execute(
                    f"""
                    UPDATE requests
                    SET {", ".join(updates)}
                    WHERE id = ? AND status IN ({placeholders})
                    """,
                    (*values, job_id, *allowed_from),
                )
                await db.commit()
                changed = cur.rowcount

        if changed == 0:
            job = await self.get_job(job_id)
            if job is None:
                raise NotFoundError(f"Job not found: {job_id}")
            raise InvalidTransitionError(
                f"Job {job_id} cannot move from {job.status!r} to {status!r}"
            )

        logger.info(
            "Job status updated",
            extra={
                "job_id": job_id,
                "status": status,
                "progress": progress,
                "step": current_step,
            },
        )

    async def set_ack_message(self, job_id: int, message_ref: str) -> None:
        """Remember the acknowledgement message so it can be removed later."""
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                "UPDATE requests SET ack_message_ref = ? WHERE id = ?",
                (message_ref, job_id),
            )
            await db.commit()
            if cur.rowcount == 0:
                raise NotFoundError(f"Job not found: {job_id}")

    async def stats(self) -> dict[str, int]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT
                    SUM(CASE WHEN status = 'pending'    THEN 1 ELSE 0 END),
                    SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN status = 'completed'  THEN 1 ELSE 0 END),
                    SUM(CASE WHEN status = 'failed'     THEN 1 ELSE 0 END)
                FROM requests
                """
            ) as cur:
                row = await cur.fetchone()

        return {
            PENDING:    row[0] or 0,
            PROCESSING: row[1] or 0,
            COMPLETED:  row[2] or 0,
            FAILED:     row[3] or 0,
        }

    # ── Artifacts ─────────────────────────────────────────────────────────────

    async def record_artifact(
        self,
        job_id: int,
        kind: str,
        filename: str,
        storage_key: str,
        public_ref: str,
        byte_size: int,
    ) -> Artifact:
        """Insert or replace the artifact of *kind* for *job_id*; expires in 7 days."""
        if kind not in MEDIA_KINDS:
            raise ValueError(f"Unknown media kind: {kind!r}")

        created = _now()
        expires = created + ARTIFACT_TTL

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA foreign_keys = ON")
            try:
                await db.execute(
                    """
                    INSERT INTO media (
                        request_id, media_type, filename, storage_key,
                        public_ref, byte_size, expires_at, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(request_id, media_type) DO UPDATE SET
                        filename    = excluded.filename,
                        storage_key = excluded.storage_key,
                        public_ref  = excluded.public_ref,
                        byte_size   = excluded.byte_size,
                        expires_at  = excluded.expires_at,
                        created_at  = excluded.created_at
                    """,
                    (
                        job_id,
                        kind,
                        filename,
                        storage_key,
                        public_ref,
                        byte_size,
                        expires.isoformat(),
                        created.isoformat(),
                    ),
                )
            except aiosqlite.IntegrityError as exc:
                raise NotFoundError(f"Job not found: {job_id}") from exc
            await db.commit()

        logger.info(
            "Media record saved",
            extra={"job_id": job_id, "kind": kind, "byte_size": byte_size},
        )
        return Artifact(
            job_id=job_id,
            kind=kind,
            filename=filename,
            storage_key=storage_key,
            public_ref=public_ref,
            byte_size=byte_size,
            expires_at=expires.isoformat(),
            created_at=created.isoformat(),
        )

    async def get_artifacts(self, job_id: int) -> list[Artifact]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM media WHERE request_id = ? ORDER BY media_type",
                (job_id,),
            ) as cur:
                return [_row_to_artifact(r) for r in await cur.fetchall()]
