"""SQLite-backed store for messages and buckets.

Messages are keyed by (user_id, source_id) so re-ingestion upserts instead of
duplicating. The ``embedding_json`` column is the message's optional embedding:
NULL until the backfill writes it, and never overwritten afterwards.

String matching folds case with Python's ``str.casefold``, registered on each
connection as the SQL function ``fold``, so non-ASCII names compare the same
way on both sides.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import structlog

from email_triage.exceptions import NotFoundError, ValidationError
from email_triage.models import DEFAULT_BUCKET_COLOR, Bucket, Message

logger = structlog.get_logger()


_SCHEMA_VERSION = 2
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_UNSET: Any = object()

DEFAULT_BUCKETS: tuple[tuple[str, str, str], ...] = (
    ("Important", "Emails requiring action or from known contacts", "#EF4444"),
    ("Can Wait", "Low priority, non-urgent emails", "#F59E0B"),
    ("Auto-archive", "Receipts, confirmations, automated notifications", "#10B981"),
    ("Newsletter", "Promotional content, marketing, bulk emails", "#6366F1"),
    ("Social", "Social media notifications", "#EC4899"),
)

_MESSAGE_COLUMNS = """
    m.id,
    m.user_id,
    m.source_id,
    m.subject,
    m.sender_name,
    m.sender_email,
    m.preview,
    m.body_snippet,
    m.received_at_ms,
    m.bucket_id,
    m.embedding_json,
    b.id AS b_id,
    b.user_id AS b_user_id,
    b.name AS b_name,
    b.description AS b_description,
    b.color AS b_color,
    b.is_default AS b_is_default,
    b.created_at_iso AS b_created_at_iso
"""

_MESSAGE_FROM = "FROM messages m LEFT JOIN buckets b ON b.id = m.bucket_id"

_KEYWORD_FIELDS = ("m.subject", "m.preview", "m.body_snippet", "m.sender_name", "m.sender_email")


@dataclass(frozen=True)
class MessageQuery:
    """Conjunctive filter over one user's messages.

    Every field left as None contributes no condition.
    """

    user_id: str
    received_from: datetime | None = None
    received_to: datetime | None = None
    sender: str | None = None
    bucket_id: str | None = None
    keyword: str | None = None
    embedded: bool | None = None
    embedding_skipped: bool | None = None


def _to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def _from_ms(value: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=value)


def _fold(value: str | None) -> str:
    return (value or "").casefold()


def _contains(column: str) -> str:
    return f"instr(fold({column}), ?) > 0"


def _where(query: MessageQuery) -> tuple[str, list[Any]]:
    clauses = ["m.user_id = ?"]
    params: list[Any] = [query.user_id]

    if query.received_from is not None:
        clauses.append("m.received_at_ms >= ?")
        params.append(_to_ms(query.received_from))
    if query.received_to is not None:
        clauses.append("m.received_at_ms <= ?")
        params.append(_to_ms(query.received_to))

    if query.sender:
        clauses.append(f"({_contains('m.sender_name')} OR {_contains('m.sender_email')})")
        needle = _fold(query.sender)
        params.extend([needle, needle])

    if query.bucket_id is not None:
        clauses.append("m.bucket_id = ?")
        params.append(query.bucket_id)

    if query.keyword:
        clauses.append("(" + " OR ".join(_contains(c) for c in _KEYWORD_FIELDS) + ")")
        params.extend([_fold(query.keyword)] * len(_KEYWORD_FIELDS))

    if query.embedded is True:
        clauses.append("m.embedding_json IS NOT NULL")
    elif query.embedded is False:
        clauses.append("m.embedding_json IS NULL")

    if query.embedding_skipped is not None:
        clauses.append("m.embedding_skipped = ?")
        params.append(1 if query.embedding_skipped else 0)

    return " AND ".join(clauses), params


class MessageRepository:
    """Repository for storing and querying messages and their buckets."""

    def __init__(self, db_path: Path) -> None:
        """Create a repository.

        Args:
            db_path: Path to the SQLite database file.
        """

        self._db_path = db_path

    def initialize(self) -> None:
        """Create or upgrade the schema."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("message_store_schema_created", version=_SCHEMA_VERSION)
                return

            if current_version == 1:
                self._migrate_v1_to_v2(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("message_store_schema_migrated", from_version=1, version=_SCHEMA_VERSION)
                return

            if current_version != _SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

    # --- Messages ---

    def upsert_messages(self, messages: Sequence[Message]) -> None:
        """Insert messages or refresh them by (user_id, source_id).

        An existing bucket assignment survives unless the incoming message carries
        one. Embeddings are never written here.
        """

        if not messages:
            return

        now_iso = datetime.now(timezone.utc).isoformat()

        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO messages (
                    id,
                    user_id,
                    source_id,
                    subject,
                    sender_name,
                    sender_email,
                    preview,
                    body_snippet,
                    received_at_ms,
                    bucket_id,
                    created_at_iso,
                    updated_at_iso
                )
                VALUES (
                    :id,
                    :user_id,
                    :source_id,
                    :subject,
                    :sender_name,
                    :sender_email,
                    :preview,
                    :body_snippet,
                    :received_at_ms,
                    :bucket_id,
                    :now_iso,
                    :now_iso
                )
                ON CONFLICT(user_id, source_id) DO UPDATE SET
                    subject=excluded.subject,
                    sender_name=excluded.sender_name,
                    sender_email=excluded.sender_email,
                    preview=excluded.preview,
                    body_snippet=excluded.body_snippet,
                    received_at_ms=excluded.received_at_ms,
                    bucket_id=COALESCE(excluded.bucket_id, messages.bucket_id),
                    embedding_skipped=0,
                    updated_at_iso=excluded.updated_at_iso
                """,
                [
                    {
                        "id": m.id,
                        "user_id": m.user_id,
                        "source_id": m.source_id,
                        "subject": m.subject,
                        "sender_name": m.sender_name,
                        "sender_email": m.sender_email,
                        "preview": m.preview,
                        "body_snippet": m.body_snippet,
                        "received_at_ms": _to_ms(m.received_at),
                        "bucket_id": m.bucket_id,
                        "now_iso": now_iso,
                    }
                    for m in messages
                ],
            )
            conn.commit()

        logger.debug("messages_upserted", count=len(messages))

    def get_message(self, user_id: str, message_id: str) -> Message | None:
        """Return one of the user's messages, with its bucket joined."""

        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM} WHERE m.user_id = ? AND m.id = ?",
                (user_id, message_id),
            ).fetchone()

        return self._row_to_message(row) if row else None

    def get_messages(self, user_id: str, message_ids: Sequence[str]) -> list[Message]:
        """Return the user's messages in the order of ``message_ids``.

        Unknown ids are skipped.
        """

        if not message_ids:
            return []

        placeholders = ", ".join("?" for _ in message_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM} "
                f"WHERE m.user_id = ? AND m.id IN ({placeholders})",
                (user_id, *message_ids),
            ).fetchall()

        by_id = {row["id"]: self._row_to_message(row) for row in rows}
        return [by_id[i] for i in message_ids if i in by_id]

    def find_messages(
        self,
        query: MessageQuery,
        limit: int = 50,
        oldest_first: bool = False,
    ) -> list[Message]:
        """Return messages matching ``query`` ordered by received time."""

        where, params = _where(query)
        direction = "ASC" if oldest_first else "DESC"
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                {_MESSAGE_FROM}
                WHERE {where}
                ORDER BY m.received_at_ms {direction}, m.id {direction}
                LIMIT ?;
                """,
                (*params, limit),
            ).fetchall()

        return [self._row_to_message(row) for row in rows]

    def find_message_ids(self, query: MessageQuery, limit: int) -> list[str]:
        """Return ids of matching messages, newest first."""

        where, params = _where(query)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT m.id
                FROM messages m
                WHERE {where}
                ORDER BY m.received_at_ms DESC, m.id DESC
                LIMIT ?;
                """,
                (*params, limit),
            ).fetchall()

        return [row["id"] for row in rows]

    def count_messages(self, query: MessageQuery) -> int:
        where, params = _where(query)
        with self._connect() as conn:
            (count,) = conn.execute(
                f"SELECT COUNT(*) FROM messages m WHERE {where}",
                params,
            ).fetchone()
        return int(count or 0)

    def set_embedding(self, message_id: str, embedding: Sequence[float]) -> bool:
        """Store an embedding if the message has none yet.

        Returns:
            True if this call wrote the embedding, False if the message already
            had one (or does not exist).
        """

        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE messages
                SET embedding_json = ?, updated_at_iso = ?
                WHERE id = ? AND embedding_json IS NULL
                """,
                (
                    json.dumps([float(x) for x in embedding]),
                    datetime.now(timezone.utc).isoformat(),
                    message_id,
                ),
            )
            conn.commit()
        return cursor.rowcount == 1

    def find_pending_embeddings(self, user_id: str, limit: int) -> list[Message]:
        """Return unembedded, non-skipped messages for the backfill.

        Messages with fewer failed attempts come first, then the oldest, so a
        message that keeps failing cannot starve the rest of the backlog.
        """

        where, params = _where(MessageQuery(user_id=user_id, embedded=False, embedding_skipped=False))
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                {_MESSAGE_FROM}
                WHERE {where}
                ORDER BY m.embedding_attempts ASC, m.received_at_ms ASC, m.id ASC
                LIMIT ?;
                """,
                (*params, limit),
            ).fetchall()

        return [self._row_to_message(row) for row in rows]

    def record_embedding_failure(self, message_id: str) -> int:
        """Count a failed embedding attempt.

        Returns:
            The message's failed attempts so far.
        """

        with self._connect() as conn:
            conn.execute(
                "UPDATE messages SET embedding_attempts = embedding_attempts + 1 WHERE id = ?",
                (message_id,),
            )
            row = conn.execute(
                "SELECT embedding_attempts FROM messages WHERE id = ?",
                (message_id,),
            ).fetchone()
            conn.commit()
        return int(row[0]) if row else 0

    def mark_embedding_skipped(self, message_id: str) -> None:
        """Exclude a message from the backfill until it is re-ingested or reset."""

        with self._connect() as conn:
            conn.execute(
                "UPDATE messages SET embedding_skipped = 1, updated_at_iso = ? WHERE id = ?",
                (datetime.now(timezone.utc).isoformat(), message_id),
            )
            conn.commit()

    def clear_embedding(self, user_id: str, message_id: str) -> bool:
        """Unset a message's embedding so the backfill recomputes it.

        Failure and skip bookkeeping is reset as well.

        Returns:
            True if the message had an embedding.
        """

        now_iso = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE messages
                SET embedding_json = NULL, updated_at_iso = ?
                WHERE user_id = ? AND id = ? AND embedding_json IS NOT NULL
                """,
                (now_iso, user_id, message_id),
            )
            cleared = cursor.rowcount == 1
            conn.execute(
                """
                UPDATE messages
                SET embedding_attempts = 0, embedding_skipped = 0
                WHERE user_id = ? AND id = ?
                """,
                (user_id, message_id),
            )
            conn.commit()
        return cleared

    def assign_bucket(self, user_id: str, message_id: str, bucket_id: str | None) -> Message:
        """Move a message into a bucket, or out of any bucket with None."""

        if bucket_id is not None and self.get_bucket(user_id, bucket_id) is None:
            raise NotFoundError(f"Bucket not found: {bucket_id}")

        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE messages SET bucket_id = ?, updated_at_iso = ? WHERE user_id = ? AND id = ?",
                (bucket_id, datetime.now(timezone.utc).isoformat(), user_id, message_id),
            )
            conn.commit()

        if cursor.rowcount == 0:
            raise NotFoundError(f"Message not found: {message_id}")

        logger.info("message_bucket_assigned", user_id=user_id, message_id=message_id, bucket_id=bucket_id)
        message = self.get_message(user_id, message_id)
        assert message is not None
        return message

    # --- Buckets ---

    def list_buckets(self, user_id: str) -> list[Bucket]:
        """Return the user's buckets, defaults first, then by creation."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, name, description, color, is_default, created_at_iso
                FROM buckets
                WHERE user_id = ?
                ORDER BY is_default DESC, created_at_iso ASC, rowid ASC;
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_bucket(row) for row in rows]

    def get_bucket(self, user_id: str, bucket_id: str) -> Bucket | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, name, description, color, is_default, created_at_iso
                FROM buckets
                WHERE user_id = ? AND id = ?;
                """,
                (user_id, bucket_id),
            ).fetchone()
        return self._row_to_bucket(row) if row else None

    def find_bucket_by_name(self, user_id: str, name: str) -> Bucket | None:
        """Resolve a bucket name, ignoring case."""

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, name, description, color, is_default, created_at_iso
                FROM buckets
                WHERE user_id = ? AND fold(name) = ?;
                """,
                (user_id, _fold(name.strip())),
            ).fetchone()
        return self._row_to_bucket(row) if row else None

    def create_bucket(
        self,
        user_id: str,
        name: str,
        description: str | None = None,
        color: str | None = None,
        is_default: bool = False,
    ) -> Bucket:
        """Create a bucket.

        Raises:
            ValidationError: If the name is blank or already used by the user.
        """

        name = (name or "").strip()
        if not name:
            raise ValidationError("Bucket name is required")
        if self.find_bucket_by_name(user_id, name) is not None:
            raise ValidationError(f"Bucket with this name already exists: {name}")

        bucket = Bucket(
            user_id=user_id,
            name=name,
            description=(description or "").strip() or None,
            color=color or DEFAULT_BUCKET_COLOR,
            is_default=is_default,
        )
        with self._connect() as conn:
            self._insert_bucket(conn, bucket)
            conn.commit()

        logger.info("bucket_created", user_id=user_id, bucket_id=bucket.id, name=name)
        return bucket

    def update_bucket(
        self,
        user_id: str,
        bucket_id: str,
        *,
        name: str | None = None,
        description: str | None = _UNSET,
        color: str | None = None,
    ) -> Bucket:
        """Rename or restyle a bucket.

        Raises:
            NotFoundError: If the bucket does not belong to the user.
            ValidationError: On a name conflict or an attempt to rename a default bucket.
        """

        bucket = self.get_bucket(user_id, bucket_id)
        if bucket is None:
            raise NotFoundError(f"Bucket not found: {bucket_id}")

        changes: dict[str, Any] = {}
        if name is not None and name.strip() and name.strip() != bucket.name:
            new_name = name.strip()
            if bucket.is_default:
                raise ValidationError("Cannot rename default bucket")
            existing = self.find_bucket_by_name(user_id, new_name)
            if existing is not None and existing.id != bucket_id:
                raise ValidationError(f"Bucket with this name already exists: {new_name}")
            changes["name"] = new_name
        if description is not _UNSET:
            changes["description"] = (description or "").strip() or None
        if color:
            changes["color"] = color

        if not changes:
            return bucket

        assignments = ", ".join(f"{column} = :{column}" for column in changes)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE buckets SET {assignments} WHERE id = :id AND user_id = :user_id",
                {**changes, "id": bucket_id, "user_id": user_id},
            )
            conn.commit()

        logger.info("bucket_updated", user_id=user_id, bucket_id=bucket_id, fields=sorted(changes))
        return bucket.model_copy(update=changes)

    def delete_bucket(self, user_id: str, bucket_id: str) -> int:
        """Delete a bucket, leaving its messages unclassified.

        Returns:
            Number of messages whose bucket was cleared.

        Raises:
            NotFoundError: If the bucket does not belong to the user.
            ValidationError: If the bucket is a default bucket.
        """

        bucket = self.get_bucket(user_id, bucket_id)
        if bucket is None:
            raise NotFoundError(f"Bucket not found: {bucket_id}")
        if bucket.is_default:
            raise ValidationError("Cannot delete default bucket")

        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE messages SET bucket_id = NULL WHERE user_id = ? AND bucket_id = ?",
                (user_id, bucket_id),
            )
            unassigned = cursor.rowcount
            conn.execute("DELETE FROM buckets WHERE id = ? AND user_id = ?", (bucket_id, user_id))
            conn.commit()

        logger.info(
            "bucket_deleted",
            user_id=user_id,
            bucket_id=bucket_id,
            name=bucket.name,
            messages_to_reclassify=unassigned,
        )
        return unassigned

    def ensure_default_buckets(self, user_id: str) -> list[Bucket]:
        """Create any missing system buckets for the user.

        Returns:
            The buckets created by this call.
        """

        created: list[Bucket] = []
        with self._connect() as conn:
            for name, description, color in DEFAULT_BUCKETS:
                bucket = Bucket(
                    user_id=user_id,
                    name=name,
                    description=description,
                    color=color,
                    is_default=True,
                )
                if self._insert_bucket(conn, bucket, ignore_existing=True):
                    created.append(bucket)
            conn.commit()

        if created:
            logger.info("default_buckets_created", user_id=user_id, count=len(created))
        return created

    # --- Internals ---

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        try:
            conn.row_factory = sqlite3.Row
            conn.create_function("fold", 1, _fold, deterministic=True)
            conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
        finally:
            conn.close()

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _migrate_v1_to_v2(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            ALTER TABLE messages ADD COLUMN embedding_attempts INTEGER NOT NULL DEFAULT 0;
            ALTER TABLE messages ADD COLUMN embedding_skipped INTEGER NOT NULL DEFAULT 0;
            """
        )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS buckets (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL COLLATE NOCASE,
                description TEXT,
                color TEXT NOT NULL,
                is_default INTEGER NOT NULL,
                created_at_iso TEXT NOT NULL,
                UNIQUE(user_id, name)
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                source_id TEXT NOT NULL,
                subject TEXT NOT NULL,
                sender_name TEXT,
                sender_email TEXT,
                preview TEXT NOT NULL,
                body_snippet TEXT,
                received_at_ms INTEGER NOT NULL,
                bucket_id TEXT REFERENCES buckets(id) ON DELETE SET NULL,
                embedding_json TEXT,
                embedding_attempts INTEGER NOT NULL DEFAULT 0,
                embedding_skipped INTEGER NOT NULL DEFAULT 0,
                created_at_iso TEXT NOT NULL,
                updated_at_iso TEXT NOT NULL,
                UNIQUE(user_id, source_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_user_received
                ON messages(user_id, received_at_ms);

            CREATE INDEX IF NOT EXISTS idx_messages_bucket
                ON messages(bucket_id);
            """
        )

    def _insert_bucket(
        self,
        conn: sqlite3.Connection,
        bucket: Bucket,
        ignore_existing: bool = False,
    ) -> bool:
        verb = "INSERT OR IGNORE" if ignore_existing else "INSERT"
        cursor = conn.execute(
            f"""
            {verb} INTO buckets (id, user_id, name, description, color, is_default, created_at_iso)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (
                bucket.id,
                bucket.user_id,
                bucket.name,
                bucket.description,
                bucket.color,
                1 if bucket.is_default else 0,
                bucket.created_at.isoformat(),
            ),
        )
        return cursor.rowcount == 1

    def _row_to_bucket(self, row: sqlite3.Row, prefix: str = "") -> Bucket:
        return Bucket(
            id=row[f"{prefix}id"],
            user_id=row[f"{prefix}user_id"],
            name=row[f"{prefix}name"],
            description=row[f"{prefix}description"],
            color=row[f"{prefix}color"],
            is_default=bool(row[f"{prefix}is_default"]),
            created_at=datetime.fromisoformat(row[f"{prefix}created_at_iso"]),
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        embedding = json.loads(row["embedding_json"]) if row["embedding_json"] else None
        bucket = self._row_to_bucket(row, prefix="b_") if row["b_id"] else None

        return Message(
            id=row["id"],
            user_id=row["user_id"],
            source_id=row["source_id"],
            subject=row["subject"] or "",
            sender_name=row["sender_name"],
            sender_email=row["sender_email"],
            preview=row["preview"] or "",
            body_snippet=row["body_snippet"],
            received_at=_from_ms(row["received_at_ms"]),
            bucket_id=row["bucket_id"],
            embedding=embedding,
            bucket=bucket,
        )
