"""Embedding backfill.

Computes embeddings for messages that do not have one yet. Each run reads the
*current* set of unembedded messages, so re-running after a partial failure
simply continues the backlog. A failed message is retried only after messages
with fewer failures, and a message with nothing to embed is skipped for good.

Store and index calls are synchronous and run in worker threads via
``asyncio.to_thread`` so the event loop stays free.
"""

from __future__ import annotations

import asyncio

import structlog

from email_triage.embeddings.provider import Embedder, build_embedding_text
from email_triage.exceptions import EmailTriageError, NotFoundError, ValidationError
from email_triage.index import MessageQuery, MessageRepository, MessageVectorIndex
from email_triage.models import BackfillReport, Message

logger = structlog.get_logger()


class EmbeddingBackfill:
    """Fills in missing message embeddings, one message at a time."""

    def __init__(
        self,
        repository: MessageRepository,
        vector_index: MessageVectorIndex,
        embedder: Embedder,
    ) -> None:
        self.repository = repository
        self.vector_index = vector_index
        self.embedder = embedder

    async def generate_missing_embeddings(self, user_id: str, batch_size: int) -> BackfillReport:
        """Embed up to ``batch_size`` of the user's unembedded messages.

        Messages with the fewest failed attempts go first, oldest first among
        equals. A failure on one message is logged and counted; the rest of the
        batch still runs.

        Args:
            user_id: Owner of the messages.
            batch_size: Maximum number of messages attempted in this run.

        Returns:
            Successes, failures, skips and the backlog left after the run.

        Raises:
            ValidationError: If ``batch_size`` is smaller than 1.
        """

        if batch_size < 1:
            raise ValidationError(f"batch_size must be at least 1, got {batch_size}")

        pending = await asyncio.to_thread(self.repository.find_pending_embeddings, user_id, batch_size)
        logger.info("embedding_backfill_started", user_id=user_id, batch=len(pending))

        processed = 0
        failed = 0
        skipped = 0
        for message in pending:
            text = build_embedding_text(message)
            if not text:
                await self._skip_message(message)
                skipped += 1
                continue

            try:
                if await self._embed_message(message, text):
                    processed += 1
            except EmailTriageError as e:
                failed += 1
                attempts = await asyncio.to_thread(self.repository.record_embedding_failure, message.id)
                logger.warning(
                    "embedding_generation_failed",
                    user_id=user_id,
                    message_id=message.id,
                    attempts=attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        remaining = await asyncio.to_thread(
            self.repository.count_messages,
            MessageQuery(user_id=user_id, embedded=False, embedding_skipped=False),
        )

        logger.info(
            "embedding_backfill_completed",
            user_id=user_id,
            processed=processed,
            failed=failed,
            skipped=skipped,
            remaining=remaining,
        )
        return BackfillReport(processed=processed, failed=failed, skipped=skipped, remaining=remaining)

    async def generate_embedding_for_message(self, user_id: str, message_id: str) -> bool:
        """Embed a single message if it has no embedding yet.

        Returns:
            True if this call stored an embedding. False if the message was
            already embedded or has no text to embed.

        Raises:
            NotFoundError: If the user has no such message.
        """

        message = await asyncio.to_thread(self.repository.get_message, user_id, message_id)
        if message is None:
            raise NotFoundError(f"Message not found: {message_id}")
        if message.has_embedding:
            return False

        text = build_embedding_text(message)
        if not text:
            await self._skip_message(message)
            return False
        return await self._embed_message(message, text)

    def reset_embedding(self, user_id: str, message_id: str) -> bool:
        """Unset a message's embedding so the next backfill recomputes it.

        Returns:
            True if the message had an embedding.
        """

        if self.repository.get_message(user_id, message_id) is None:
            raise NotFoundError(f"Message not found: {message_id}")

        cleared = self.repository.clear_embedding(user_id, message_id)
        self.vector_index.delete(message_id)
        logger.info("embedding_reset", user_id=user_id, message_id=message_id, cleared=cleared)
        return cleared

    async def _skip_message(self, message: Message) -> None:
        await asyncio.to_thread(self.repository.mark_embedding_skipped, message.id)
        logger.info("embedding_skipped_blank_text", user_id=message.user_id, message_id=message.id)

    async def _embed_message(self, message: Message, text: str) -> bool:
        vector = await self.embedder.embed(text)

        # Index first: a row marked embedded must already be searchable.
        await asyncio.to_thread(self.vector_index.upsert, message.id, message.user_id, vector)
        written = await asyncio.to_thread(self.repository.set_embedding, message.id, vector)
        if not written:
            logger.debug("embedding_already_present", message_id=message.id)
        return written
