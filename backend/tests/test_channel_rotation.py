"""
Sales CRM - Outbound number rotation
- daily_count never exceeds daily_limit
- daily reset happens once per day, even from stale reads
- strategies, default channel, rotation toggle
"""

import random

import pytest

from config import today_str
from models import OutboundChannel
from services.channel_rotator import ChannelRotator, order_by_strategy
from services.errors import NoChannelAvailableError, ChannelLimitReachedError, NotFoundError
from tests.conftest import yesterday_str


def _channel(identifier, **values):
    return OutboundChannel(id=identifier, identifier=identifier, **values)


class TestStrategyOrdering:

    def test_round_robin_never_used_first(self):
        channels = [
            _channel("+15550000001", last_used="2026-03-10T09:00:00.000000+00:00"),
            _channel("+15550000002", last_used=None),
            _channel("+15550000003", last_used="2026-03-10T08:00:00.000000+00:00"),
        ]
        ordered = [c.identifier for c in order_by_strategy(channels, "round-robin")]
        assert ordered == ["+15550000002", "+15550000003", "+15550000001"]
        print(f"✅ round-robin: {ordered}")

    def test_least_used(self):
        channels = [
            _channel("+15550000001", daily_count=5, message_count=10),
            _channel("+15550000002", daily_count=2, message_count=90),
        ]
        assert order_by_strategy(channels, "least-used-today")[0].identifier == "+15550000002"
        assert order_by_strategy(channels, "least-used-overall")[0].identifier == "+15550000001"
        print("✅ least-used-today / least-used-overall")

    def test_random_is_a_permutation(self):
        channels = [_channel(f"+1555000000{i}") for i in range(5)]
        shuffled = order_by_strategy(channels, "random", random.Random(7))
        assert sorted(c.identifier for c in shuffled) == sorted(c.identifier for c in channels)
        print("✅ random strategy keeps every candidate")


class TestQuota:

    @pytest.mark.asyncio
    async def test_limit_one_scenario(self, seed, channels):
        await seed.channel("+15550000001", daily_limit=1)

        selected = await channels.select_channel()
        used = await channels.record_usage(selected.id)
        assert used.daily_count == 1

        with pytest.raises(NoChannelAvailableError):
            await channels.select_channel()
        print("✅ limit=1: second selection refused")

    @pytest.mark.asyncio
    async def test_select_does_not_consume(self, db, seed, channels):
        doc = await seed.channel("+15550000001", daily_limit=3)
        for _ in range(5):
            await channels.select_channel()
        assert (await db.outbound_channels.find_one({"id": doc["id"]}))["daily_count"] == 0
        print("✅ select_channel has no side effect on quota")

    @pytest.mark.asyncio
    async def test_lost_race_for_last_unit(self, db, seed, channels):
        await seed.channel("+15550000001", daily_limit=2, daily_count=1)

        mine = await channels.select_channel()
        theirs = await channels.select_channel()
        await channels.record_usage(theirs.id)

        with pytest.raises(ChannelLimitReachedError) as exc_info:
            await channels.record_usage(mine.id)
        assert isinstance(exc_info.value, NoChannelAvailableError)

        stored = await db.outbound_channels.find_one({"id": mine.id})
        assert stored["daily_count"] == 2
        print("✅ Conditional increment never exceeds the limit")

    @pytest.mark.asyncio
    async def test_reserve_moves_to_next_channel(self, db, seed, channels):
        await seed.channel("+15550000001", daily_limit=1)
        await seed.channel("+15550000002", daily_limit=1)

        first = await channels.reserve_channel()
        second = await channels.reserve_channel()
        assert first.identifier != second.identifier

        with pytest.raises(NoChannelAvailableError):
            await channels.reserve_channel()

        docs = await db.outbound_channels.find({}).to_list(10)
        assert all(d["daily_count"] <= d["daily_limit"] for d in docs)
        print("✅ Reservations spread then exhaust cleanly")

    @pytest.mark.asyncio
    async def test_release_restores_quota(self, db, seed, channels):
        doc = await seed.channel("+15550000001", daily_limit=1)

        reserved = await channels.reserve_channel()
        assert await channels.release_channel(reserved.id) is True

        stored = await db.outbound_channels.find_one({"id": doc["id"]})
        assert stored["daily_count"] == 0
        assert stored["message_count"] == 0
        assert (await channels.select_channel()).id == doc["id"]

        assert await channels.release_channel(reserved.id) is False
        print("✅ release_channel gives the unit back once")

    @pytest.mark.asyncio
    async def test_inactive_and_missing(self, seed, channels):
        doc = await seed.channel("+15550000001", is_active=False)
        with pytest.raises(NoChannelAvailableError):
            await channels.select_channel()
        with pytest.raises(ChannelLimitReachedError):
            await channels.record_usage(doc["id"])
        with pytest.raises(NotFoundError):
            await channels.record_usage("nope")
        print("✅ Inactive channels never selected")


class TestDailyReset:

    @pytest.mark.asyncio
    async def test_yesterday_counter_reset(self, db, seed, channels):
        doc = await seed.channel("+15550000001", daily_limit=5, daily_count=5, reset_date=yesterday_str())

        selected = await channels.select_channel()
        assert selected.daily_count == 0
        assert selected.daily_count_reset_date == today_str()

        await channels.record_usage(selected.id)
        again = await channels.select_channel()
        assert again.daily_count == 1
        print("✅ Reset once, usage kept afterwards")

    @pytest.mark.asyncio
    async def test_stale_read_cannot_reset_twice(self, db, seed, channels):
        stale = await seed.channel("+15550000001", daily_limit=5, daily_count=4, reset_date=yesterday_str())
        today = today_str()

        fresh = await channels._reset_if_needed(dict(stale), today)
        assert fresh["daily_count"] == 0
        await channels.record_usage(stale["id"])

        replay = await channels._reset_if_needed(dict(stale), today)
        assert replay["daily_count"] == 1
        stored = await db.outbound_channels.find_one({"id": stale["id"]})
        assert stored["daily_count"] == 1
        print("✅ Second reset from a stale snapshot is a no-op")

    @pytest.mark.asyncio
    async def test_never_reset_channel(self, seed, channels):
        await seed.channel("+15550000001", daily_count=3, reset_date=None)
        selected = await channels.select_channel()
        assert selected.daily_count == 0
        assert selected.daily_count_reset_date == today_str()
        print("✅ Channel without reset date is reset on first use")


class TestSelectionPolicy:

    @pytest.mark.asyncio
    async def test_prefer_default(self, seed, channels):
        await seed.channel("+15550000001")
        default = await seed.channel("+15550000002", is_default=True, last_used="2026-03-10T10:00:00.000000+00:00")
        await seed.company(prefer_default_number=True)

        assert (await channels.select_channel()).id == default["id"]
        print("✅ Default channel preferred")

    @pytest.mark.asyncio
    async def test_default_at_limit_falls_back(self, seed, channels):
        other = await seed.channel("+15550000001")
        await seed.channel("+15550000002", is_default=True, daily_limit=1, daily_count=1)
        await seed.company(prefer_default_number=True)

        assert (await channels.select_channel()).id == other["id"]
        print("✅ Saturated default is skipped")

    @pytest.mark.asyncio
    async def test_rotation_disabled(self, seed, channels):
        await seed.channel("+15550000003")
        first = await seed.channel("+15550000001", last_used="2026-03-10T10:00:00.000000+00:00")
        await seed.channel("+15550000002")
        await seed.company(number_rotation_enabled=False)

        assert (await channels.select_channel()).id == first["id"]
        print("✅ Rotation disabled: first number by identifier")

    @pytest.mark.asyncio
    async def test_least_used_today_from_settings(self, seed, channels):
        await seed.channel("+15550000001", daily_count=7)
        quiet = await seed.channel("+15550000002", daily_count=1)
        await seed.company(rotation_strategy="least-used-today")

        assert (await channels.select_channel()).id == quiet["id"]
        print("✅ Strategy read from company settings")


class TestAdministration:

    @pytest.mark.asyncio
    async def test_set_default_is_exclusive(self, db, seed, channels):
        old = await seed.channel("+15550000001", is_default=True)
        new = await seed.channel("+15550000002")

        result = await channels.set_default_channel(new["id"])
        assert result.is_default is True
        assert (await db.outbound_channels.find_one({"id": old["id"]}))["is_default"] is False
        print("✅ One default channel at a time")

    @pytest.mark.asyncio
    async def test_reset_all_and_stats(self, db, seed, channels):
        await seed.channel("+15550000002", daily_count=9)
        await seed.channel("+15550000001", daily_count=4)

        assert await channels.reset_all_daily_counts() == 2
        stats = await channels.usage_statistics()
        assert [s["identifier"] for s in stats] == ["+15550000001", "+15550000002"]
        assert all(s["daily_count"] == 0 for s in stats)
        print("✅ Manual reset and usage statistics")

    @pytest.mark.asyncio
    async def test_seeded_rng_is_deterministic(self, db, seed):
        for i in range(4):
            await seed.channel(f"+1555000000{i}")
        await seed.company(rotation_strategy="random")

        a = await ChannelRotator(db, random.Random(42)).select_channel()
        b = await ChannelRotator(db, random.Random(42)).select_channel()
        assert a.id == b.id
        print("✅ Random strategy reproducible with a seeded rng")
