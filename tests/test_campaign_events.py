import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from db import get_db
from db.repositories import campaign_events as campaign_events_repo
from schemas.webhooks import CampaignEvent, normalize_event_record

pytestmark = pytest.mark.usefixtures("database")

T0 = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


async def record(event_id, event, email="a@scg.com", campaign_id="12", minutes=0, **extra):
    values = {
        "event_id": str(event_id) if event_id is not None else None,
        "event": event,
        "campaign_id": campaign_id,
        "campaign_name": f"Campaign {campaign_id}",
        "email": email,
        "event_at": T0 + timedelta(minutes=minutes),
    }
    values.update(extra)
    async with get_db() as db:
        return await campaign_events_repo.record_event(db, values)


async def stats(campaign_id=None):
    async with get_db() as db:
        return await campaign_events_repo.campaign_stats(db, campaign_id=campaign_id)


class TestRecordEvent:
    async def test_same_event_twice_is_stored_once(self):
        assert await record(1, "opened") is True
        assert await record(1, "opened") is False
        # The same provider id with another event type is a different event
        assert await record(1, "click") is True

        [row] = await stats()
        assert (row["opened"], row["clicked"]) == (1, 1)

    async def test_concurrent_redelivery(self):
        results = await asyncio.gather(*(record(9, "delivered") for _ in range(5)))
        assert sorted(results) == [False, False, False, False, True]
        assert (await stats())[0]["delivered"] == 1

    async def test_events_without_an_id_are_all_kept(self):
        assert await record(None, "opened")
        assert await record(None, "opened")
        assert (await stats())[0]["opened"] == 2

    async def test_unknown_columns_are_dropped(self):
        assert await record(2, "delivered", lead_source="ignored")


class TestCampaignStats:
    async def seed(self):
        await record(1, "delivered", "a@scg.com")
        await record(2, "delivered", "b@scg.com")
        await record(3, "delivered", "c@scg.com")
        await record(4, "opened", "a@scg.com", minutes=5)
        await record(5, "opened", "a@scg.com", minutes=6)
        await record(6, "opened", "b@scg.com", minutes=7)
        await record(7, "click", "a@scg.com", minutes=8)
        await record(8, "delivered", "z@ptt.com", campaign_id="40", minutes=60)

    async def test_totals_unique_counts_and_rates(self):
        await self.seed()
        [row] = await stats("12")

        assert row["campaign_name"] == "Campaign 12"
        assert (row["delivered"], row["opened"], row["clicked"]) == (3, 3, 1)
        assert (row["unique_opens"], row["unique_clicks"]) == (2, 1)
        assert row["open_rate"] == 66.67
        assert row["click_rate"] == 33.33
        assert row["first_event_at"].startswith("2024-06-01T09:00")
        assert row["last_event_at"].startswith("2024-06-01T09:08")

    async def test_most_recent_campaign_first(self):
        await self.seed()
        assert [row["campaign_id"] for row in await stats()] == ["40", "12"]

    async def test_rates_without_deliveries(self):
        await record(1, "opened", campaign_id="77")
        [row] = await stats("77")
        assert row["delivered"] == 0
        assert (row["open_rate"], row["click_rate"]) == (0.0, 0.0)

    async def test_unknown_campaign(self):
        assert await stats("nope") == []

    async def test_list_events(self):
        await self.seed()
        async with get_db() as db:
            events, total = await campaign_events_repo.list_events(db, "12", page=1, limit=2)
            assert total == 7
            assert [e.event_id for e in events] == ["7", "6"]

            events, total = await campaign_events_repo.list_events(db, "12", event="opened")
            assert total == 3
            assert {e.event for e in events} == {"opened"}


class TestEventRecordFields:
    def test_provider_field_names(self):
        event = CampaignEvent.model_validate({
            "event": "Opened",
            "email": "A@SCG.com",
            "id": 4411,
            "camp_id": 12,
            "campaign name": "Q3 Lubricants",
            "URL": "https://example.com/promo",
            "date_event": "2024-06-01T09:30:00+07:00",
            "tag": "q3",
        })
        values = normalize_event_record(event)

        assert values["event_id"] == "4411"
        assert values["event"] == "opened"
        assert values["campaign_id"] == "12"
        assert values["campaign_name"] == "Q3 Lubricants"
        assert values["email"] == "a@scg.com"
        assert values["url"] == "https://example.com/promo"
        assert values["tag"] == "q3"
        assert values["event_at"].utcoffset() == timedelta(hours=7)

    def test_message_id_when_there_is_no_event_id(self):
        event = CampaignEvent.model_validate({"event": "delivered", "email": "a@b.co", "message-id": "<m@relay>"})
        assert normalize_event_record(event)["event_id"] == "<m@relay>"
        assert event.is_recorded
        assert not CampaignEvent.model_validate({"event": "spam", "email": "a@b.co"}).is_recorded
