"""Tests for BatchReconciliationJob, alone and racing the live path."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from loguru import logger

from chatsync.errors import StoreUnavailable
from chatsync.pipeline.reconcile import BatchReconciliationJob
from conftest import BASE_TIME, make_event


def _history(platform, count, conversation_ref="chat-1", **kwargs):
    events = [
        make_event(f"m{i}", conversation_ref=conversation_ref, body=f"msg {i}", minutes=i, **kwargs)
        for i in range(1, count + 1)
    ]
    platform.add_history(*events)
    return events


class TestReconcile:
    @pytest.mark.asyncio
    async def test_recovers_only_the_missing_message(self, reconciler, gateway, platform):
        platform.add_conversation("chat-1", name="Ana")
        events = _history(platform, 3)
        await reconciler.reconcile("chat-1")
        before = {e.id: await gateway.get_message(e.id) for e in events}
        total_before = (await gateway.get_conversation("chat-1")).rollup.total_messages

        platform.add_history(make_event("m4", body="msg 4", minutes=4))
        report = await reconciler.reconcile("chat-1")

        assert report.fetched == 4
        assert report.already_stored == 3
        assert report.persisted == 1
        assert report.error is None
        assert (await gateway.get_message("m4")).body == "msg 4"
        for message_id, record in before.items():
            assert await gateway.get_message(message_id) == record
        rollup = (await gateway.get_conversation("chat-1")).rollup
        assert rollup.total_messages == total_before + 1 == 4
        assert rollup.first_message_at == BASE_TIME + timedelta(minutes=1)
        assert rollup.last_message_at == BASE_TIME + timedelta(minutes=4)

    @pytest.mark.asyncio
    async def test_rerun_with_nothing_new_writes_no_messages(self, reconciler, gateway, platform):
        _history(platform, 3)
        await reconciler.reconcile("chat-1")
        gateway.calls.clear()

        report = await reconciler.reconcile("chat-1")

        assert report.persisted == 0
        assert report.already_stored == 3
        assert gateway.calls.get("existing_message_ids") == 1
        assert gateway.message_writes() == 0
        assert "increment_rollup" not in gateway.calls
        assert (await gateway.get_conversation("chat-1")).rollup.total_messages == 3

    @pytest.mark.asyncio
    async def test_history_never_triggers_replies(self, reconciler, platform, llm):
        _history(platform, 2)

        await reconciler.reconcile("chat-1")

        llm.generate_response.assert_not_awaited()
        assert platform.sent == []

    @pytest.mark.asyncio
    async def test_window_limits_what_is_fetched(self, reconciler, gateway, platform):
        _history(platform, 5)

        report = await reconciler.reconcile("chat-1", fetch_window=2)

        assert report.fetched == 2
        assert await gateway.existing_message_ids([f"m{i}" for i in range(1, 6)]) == {"m4", "m5"}

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_window_are_stored_once(self, reconciler, gateway, platform):
        event = make_event("m1")
        platform.add_history(event, event)

        report = await reconciler.reconcile("chat-1")

        assert report.fetched == 1
        assert report.persisted == 1
        assert (await gateway.get_conversation("chat-1")).rollup.total_messages == 1

    @pytest.mark.asyncio
    async def test_recovered_attachment_is_materialized(self, reconciler, gateway, platform):
        platform.add_history(
            make_event("m1", kind="voice", has_attachment=True, mime_type="audio/ogg")
        )

        await reconciler.reconcile("chat-1")

        descriptor = await gateway.find_attachment("m1")
        assert descriptor.success is True
        assert descriptor.stored_name.endswith(".ogg")

    @pytest.mark.asyncio
    async def test_empty_history_still_refreshes_conversation(self, reconciler, gateway, platform):
        platform.add_conversation("chat-1", name="Ana", pinned=True)

        report = await reconciler.reconcile("chat-1")

        assert report.fetched == 0
        conversation = await gateway.get_conversation("chat-1")
        assert conversation.pinned is True
        assert conversation.rollup.total_messages == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_platform_failure_is_reported(self, reconciler, platform):
        platform.fail_history = True

        report = await reconciler.reconcile("chat-1")

        assert report.error is not None
        assert "history unavailable" in report.error

    @pytest.mark.asyncio
    async def test_failure_is_logged_with_traceback(self, reconciler, platform):
        platform.fail_history = True
        records = []
        sink = logger.add(lambda message: records.append(message.record), level="ERROR")
        try:
            await reconciler.reconcile("chat-1")
        finally:
            logger.remove(sink)

        assert records[0]["exception"].type is ConnectionError

    @pytest.mark.asyncio
    async def test_store_outage_is_reported(self, broken_gateway, platform, materializer):
        _history(platform, 2)
        job = BatchReconciliationJob(broken_gateway, platform, materializer)

        report = await job.reconcile("chat-1")

        assert report.error is not None
        assert report.persisted == 0


class TestRaceWithLivePath:
    @pytest.mark.asyncio
    async def test_attachment_materialized_once(self, realtime, reconciler, gateway, platform):
        event = make_event("m1", kind="photo", has_attachment=True, mime_type="image/jpeg")
        platform.add_history(event)

        await asyncio.gather(realtime.handle(event), reconciler.reconcile("chat-1"))
        await reconciler.reconcile("chat-1")

        assert platform.fetch_calls == ["m1"]
        assert (await gateway.find_attachment("m1")).success is True

    @pytest.mark.asyncio
    async def test_live_then_batch_counts_each_message_once(
        self, realtime, reconciler, gateway, platform
    ):
        realtime.set_auto_reply_enabled(False)
        events = _history(platform, 3)
        for event in events[:2]:
            await realtime.handle(event)

        report = await reconciler.reconcile("chat-1")

        assert report.persisted == 1
        assert (await gateway.get_conversation("chat-1")).rollup.total_messages == 3


class TestReconcileAll:
    @pytest.mark.asyncio
    async def test_every_known_conversation_is_reconciled(self, reconciler, gateway, platform):
        platform.add_conversation("chat-1", name="Ana")
        platform.add_conversation("g1", name="Family", is_multi_party=True)
        _history(platform, 2, conversation_ref="chat-1")
        platform.add_history(make_event("g-1", conversation_ref="g1", author_sub_ref="u9"))

        reports = await reconciler.reconcile_all()

        assert sorted((r.conversation_id, r.persisted) for r in reports) == [
            ("chat-1", 2),
            ("g1", 1),
        ]
        group_message = await gateway.get_message("g-1")
        assert group_message.is_multi_party is True
        assert group_message.conversation_name == "Family"

    @pytest.mark.asyncio
    async def test_listing_failure_returns_no_reports(self, reconciler, platform):
        async def _boom():
            raise ConnectionError("offline")

        platform.list_conversations = _boom

        assert await reconciler.reconcile_all() == []


class TestPartialStoreFailure:
    @pytest.mark.asyncio
    async def test_claimed_message_counts_when_descriptor_upsert_fails(
        self, reconciler, gateway, platform
    ):
        platform.add_history(
            make_event("m1", kind="photo", has_attachment=True, mime_type="image/jpeg"),
            make_event("m2", minutes=1),
        )
        real_upsert = gateway.upsert_message
        failed = []

        async def flaky_upsert(record):
            if not failed:
                failed.append(record.message_id)
                raise StoreUnavailable("upsert_message")
            return await real_upsert(record)

        gateway.upsert_message = flaky_upsert

        first = await reconciler.reconcile("chat-1")
        second = await reconciler.reconcile("chat-1")

        assert failed == ["m1"]
        assert (first.persisted, first.failed) == (2, 0)
        assert second.persisted == 0
        rollup = (await gateway.get_conversation("chat-1")).rollup
        assert rollup.total_messages == 2
        assert rollup.first_message_at == BASE_TIME
        assert await gateway.messages_missing_attachment() == ["m1"]
        assert platform.fetch_calls == ["m1"]

    @pytest.mark.asyncio
    async def test_metadata_failure_still_bumps_rollup(self, reconciler, gateway, platform):
        _history(platform, 2)
        gateway.upsert_conversation = AsyncMock(
            side_effect=StoreUnavailable("upsert_conversation")
        )

        report = await reconciler.reconcile("chat-1")

        assert report.persisted == 2
        assert report.error is not None
        assert (await gateway.get_conversation("chat-1")).rollup.total_messages == 2
