import pytest

from errors import DuplicateLeadError, TransientInfrastructureError
from tools.dead_letter import DeadLetterQueue, FailedEvent
from tools.processing_status import ProcessingStatusStore


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestDeadLetterQueue:
    """Memory-backed dead-letter list (no Redis configured)."""

    def setup_method(self):
        self.clock = FakeClock()
        self.queue = DeadLetterQueue(max_size=3, ttl_seconds=60, clock=self.clock)

    async def add(self, n=1, event_type="campaign_webhook"):
        events = []
        for i in range(n):
            events.append(await self.queue.add(
                event_type, {"email": f"lead{i}@scg.com"}, TransientInfrastructureError("database", "timeout")
            ))
            self.clock.advance(1)
        return events

    async def test_add_records_error_details(self):
        await self.queue.start()
        event = await self.queue.add(
            "campaign_webhook", {"email": "a@scg.com"}, TransientInfrastructureError("database", "timeout"),
            request_id="req-1",
        )
        assert event.id.startswith("dlq_")
        assert event.error_code == "SERVICE_UNAVAILABLE"
        assert "database error: timeout" in event.error_message
        assert event.request_id == "req-1"
        assert event.retry_count == 0
        assert self.queue.storage == "memory"

        stored = await self.queue.get(event.id)
        assert stored.payload == {"email": "a@scg.com"}

    async def test_plain_exception_message(self):
        event = await self.queue.add("lead_persist", {"lead_id": "x"}, RuntimeError())
        assert event.error_message == "RuntimeError"
        assert event.error_code is None

    async def test_list_is_newest_first(self):
        events = await self.add(3)
        listed = await self.queue.list_events()
        assert [e.id for e in listed] == [e.id for e in reversed(events)]
        assert [e.id for e in await self.queue.list_events(limit=2)] == [events[2].id, events[1].id]

    async def test_oldest_is_evicted_when_full(self):
        events = await self.add(4)
        listed = await self.queue.list_events()
        assert len(listed) == 3
        assert events[0].id not in {e.id for e in listed}
        assert await self.queue.get(events[0].id) is None

    async def test_entries_expire(self):
        first, second = await self.add(2)
        self.clock.advance(58.5)
        listed = await self.queue.list_events()
        assert [e.id for e in listed] == [second.id]

        self.clock.advance(10)
        assert await self.queue.list_events() == []
        assert await self.queue.get(second.id) is None

    async def test_remove(self):
        (event,) = await self.add(1)
        assert await self.queue.remove(event.id) is True
        assert await self.queue.remove(event.id) is False
        assert await self.queue.list_events() == []

    async def test_mark_retried(self):
        (event,) = await self.add(1)
        retried = await self.queue.mark_retried(event.id)
        retried = await self.queue.mark_retried(event.id)
        assert retried.retry_count == 2
        assert retried.last_retry_at == self.clock.now
        assert (await self.queue.get(event.id)).retry_count == 2
        assert await self.queue.mark_retried("dlq_missing") is None

    async def test_stats(self):
        await self.add(2)
        await self.add(1, event_type="chat_postback")
        stats = await self.queue.stats()
        assert stats["total_events"] == 3
        assert stats["by_type"] == {"campaign_webhook": 2, "chat_postback": 1}
        assert stats["oldest_event"] < stats["newest_event"]
        assert stats["storage"] == "memory"

    async def test_unreachable_redis_falls_back_to_memory(self):
        await self.queue.start(redis_url="redis://127.0.0.1:1/0")
        assert self.queue.storage == "memory"
        await self.add(1)
        assert len(await self.queue.list_events()) == 1
        await self.queue.close()

    async def test_close_clears_memory(self):
        await self.add(2)
        await self.queue.close()
        assert await self.queue.list_events() == []

    def test_failed_event_roundtrip(self):
        event = FailedEvent(id="dlq_1", type="chat_postback", payload={"value": "x"}, error_message="boom")
        assert FailedEvent.from_dict({**event.to_dict(), "unexpected": 1}) == event

    async def test_duplicate_error_code(self):
        event = await self.queue.add("campaign_webhook", {}, DuplicateLeadError("a@b.co", "unknown"))
        assert event.error_code == "DUPLICATE_LEAD"


class TestProcessingStatusStore:
    def setup_method(self):
        self.clock = FakeClock()
        self.store = ProcessingStatusStore(ttl_seconds=60, max_size=2, clock=self.clock)

    def test_lifecycle(self):
        self.store.create("c1", "a@scg.com", "SCG")
        assert self.store.get("c1").status == "pending"

        self.store.update("c1", 40, "Analysing company")
        status = self.store.get("c1")
        assert status.status == "processing"
        assert status.progress == 40
        assert status.current_step == "Analysing company"

        self.clock.advance(2.5)
        self.store.complete("c1", lead_id="lead_1", industry="Construction", confidence=70)
        status = self.store.get("c1")
        assert status.status == "completed"
        assert status.progress == 100
        assert status.confidence == 70
        assert status.duration == pytest.approx(2.5)

    def test_fail(self):
        self.store.create("c1", "a@scg.com")
        self.store.fail("c1", "Persist failed")
        status = self.store.get("c1")
        assert status.status == "failed"
        assert status.error == "Persist failed"

    def test_unknown_ids_are_ignored(self):
        self.store.update("missing", 10, "step")
        self.store.complete("missing")
        self.store.fail("missing", "error")
        assert self.store.get("missing") is None

    def test_expiry_and_size_bound(self):
        self.store.create("c1", "a@scg.com")
        self.clock.advance(1)
        self.store.create("c2", "b@scg.com")
        self.clock.advance(1)
        self.store.create("c3", "c@scg.com")
        assert self.store.get("c1") is None
        assert len(self.store) == 2

        self.clock.advance(61)
        assert self.store.get("c3") is None
        assert len(self.store) == 0

    async def test_start_and_close(self):
        self.store.create("c1", "a@scg.com")
        await self.store.start(ttl_seconds=10, max_size=5)
        assert self.store.ttl_seconds == 10
        assert len(self.store) == 0
        self.store.create("c2", "b@scg.com")
        await self.store.close()
        assert len(self.store) == 0
