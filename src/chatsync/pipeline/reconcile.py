"""Batch reconciliation: recover messages the live path missed.

For each conversation: fetch the platform's recent window, ask the
gateway once which ids are already stored, and run the persistence
sequence only for the difference. Recovered history never triggers
auto-replies. Safe to re-run: with nothing new it costs one batched
lookup and no message writes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from loguru import logger

from chatsync.constants import DEFAULT_FETCH_WINDOW, DEFAULT_RECONCILE_CONCURRENCY
from chatsync.errors import StoreUnavailable
from chatsync.models import Message
from chatsync.pipeline.materializer import AttachmentMaterializer
from chatsync.pipeline.normalizer import normalize_conversation
from chatsync.pipeline.steps import persist_new_message
from chatsync.platform.base import BasePlatformClient, PlatformConversation
from chatsync.store.gateway import PersistenceGateway


@dataclass
class ReconcileReport:
    conversation_id: str
    fetched: int = 0
    already_stored: int = 0
    persisted: int = 0
    failed: int = 0
    error: str | None = None


class BatchReconciliationJob:
    """Compares platform history against the store and fills the gaps."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        platform: BasePlatformClient,
        materializer: AttachmentMaterializer,
        fetch_window: int = DEFAULT_FETCH_WINDOW,
        concurrency: int = DEFAULT_RECONCILE_CONCURRENCY,
    ) -> None:
        self._gateway = gateway
        self._platform = platform
        self._materializer = materializer
        self._fetch_window = fetch_window
        self._concurrency = max(1, concurrency)

    async def reconcile(
        self,
        conversation_ref: str,
        fetch_window: int | None = None,
        conversation: PlatformConversation | None = None,
    ) -> ReconcileReport:
        """Reconcile one conversation; never raises."""
        report = ReconcileReport(conversation_id=conversation_ref)
        try:
            await self._reconcile(conversation_ref, fetch_window, conversation, report)
        except Exception as exc:
            logger.opt(exception=exc).error(
                "Reconciliation of {} failed: {}", conversation_ref, exc
            )
            report.error = f"{type(exc).__name__}: {exc}"
        return report

    async def _reconcile(
        self,
        conversation_ref: str,
        fetch_window: int | None,
        conversation: PlatformConversation | None,
        report: ReconcileReport,
    ) -> None:
        window = fetch_window if fetch_window is not None else self._fetch_window
        if conversation is None:
            conversation = await self._resolve_conversation(conversation_ref)

        # 1. Recent window from the platform
        fetched = await self._platform.fetch_recent_messages(conversation_ref, window)
        seen: set[str] = set()
        events = []
        for event in fetched:
            if event.id not in seen:
                seen.add(event.id)
                events.append(event)
        report.fetched = len(events)

        # 2. One batched existence check
        try:
            existing = await self._gateway.existing_message_ids(e.id for e in events)
        except StoreUnavailable as exc:
            report.error = str(exc)
            logger.error("Skipping {}: {}", conversation_ref, exc)
            return
        report.already_stored = len(existing)

        # 3. Same persistence sequence as the live path, only for the difference
        new_records: list[Message] = []
        for event in events:
            if event.id in existing:
                continue
            try:
                record = await persist_new_message(
                    event, conversation, self._gateway, self._materializer
                )
            except Exception as exc:
                report.failed += 1
                logger.error("Could not recover {}: {}", event.id, exc)
                continue
            if record is None:
                # The live path stored it between our lookup and our claim.
                report.already_stored += 1
                continue
            new_records.append(record)
        report.persisted = len(new_records)

        # 4. Conversation metadata and rollup, once per conversation
        try:
            await self._gateway.upsert_conversation(normalize_conversation(conversation))
        except StoreUnavailable as exc:
            report.error = str(exc)
            logger.error("Metadata for {} not refreshed: {}", conversation_ref, exc)
        if new_records:
            sent_times = [record.sent_at for record in new_records]
            try:
                await self._gateway.increment_rollup(
                    conversation.ref,
                    max(sent_times),
                    count=len(new_records),
                    first_at=min(sent_times),
                )
            except StoreUnavailable as exc:
                report.error = str(exc)
                logger.error("Rollup for {} not updated: {}", conversation_ref, exc)

        logger.info(
            "Reconciled {}: {}/{} already stored, {} recovered, {} failed",
            conversation_ref,
            report.already_stored,
            report.fetched,
            report.persisted,
            report.failed,
        )

    async def reconcile_all(self, fetch_window: int | None = None) -> list[ReconcileReport]:
        """Reconcile every conversation the platform knows about."""
        try:
            conversations = await self._platform.list_conversations()
        except Exception as exc:
            logger.error("Could not list conversations for reconciliation: {}", exc)
            return []

        logger.info(
            f"Reconciling {len(conversations)} conversations "
            f"(concurrency={self._concurrency})"
        )
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _one(conversation: PlatformConversation) -> ReconcileReport:
            async with semaphore:
                return await self.reconcile(
                    conversation.ref, fetch_window, conversation=conversation
                )

        reports = await asyncio.gather(*(_one(c) for c in conversations))
        recovered = sum(r.persisted for r in reports)
        logger.info(f"Reconciliation complete: {recovered} messages recovered")
        return list(reports)

    async def _resolve_conversation(self, conversation_ref: str) -> PlatformConversation:
        try:
            return await self._platform.get_conversation(conversation_ref)
        except Exception as exc:
            logger.warning("Could not resolve conversation {}: {}", conversation_ref, exc)
            return PlatformConversation(ref=conversation_ref, name=conversation_ref)
