import asyncio

from soltrade.services.price_tracker import PriceTracker

from fakes import FakeFeed, RecordingSleep


async def _spin(times: int = 20) -> None:
    for _ in range(times):
        await asyncio.sleep(0)


def test_one_poll_loop_fans_out_to_every_subscriber() -> None:
    async def run() -> None:
        feed = FakeFeed({"TOKEN": 1.5})
        tracker = PriceTracker(feed, poll_interval_s=5, sleep=RecordingSleep())
        seen_a, seen_b = [], []

        async def async_cb(price: float) -> None:
            seen_b.append(price)

        first = await tracker.start_tracking("TOKEN", seen_a.append)
        second = await tracker.start_tracking("TOKEN", async_cb)
        assert tracker.subscriber_count("TOKEN") == 2
        await _spin()

        assert seen_a and seen_b
        assert set(seen_a) == {1.5}
        assert tracker.last_price("TOKEN") == 1.5

        await tracker.unsubscribe(first)
        assert tracker.is_tracking("TOKEN")
        count_a = len(seen_a)
        await _spin()
        assert len(seen_a) == count_a

        await tracker.unsubscribe(second)
        assert not tracker.is_tracking("TOKEN")
        assert tracker.tracked_tokens() == []

    asyncio.run(run())


def test_zero_price_is_not_dispatched_and_callback_errors_do_not_stop_polling() -> None:
    async def run() -> None:
        feed = FakeFeed({"GOOD": 2.0})
        tracker = PriceTracker(feed, sleep=RecordingSleep())
        dead, good = [], []

        def boom(price: float) -> None:
            raise ValueError("subscriber bug")

        await tracker.start_tracking("DEAD", dead.append)
        await tracker.start_tracking("GOOD", boom)
        await tracker.start_tracking("GOOD", good.append)
        await _spin()

        assert dead == []
        assert len(good) >= 2
        await tracker.shutdown()
        assert tracker.tracked_tokens() == []

    asyncio.run(run())


def test_stop_tracking_cancels_the_poll_task() -> None:
    async def run() -> None:
        tracker = PriceTracker(FakeFeed({"TOKEN": 1.0}), poll_interval_s=3600)
        seen = []
        await tracker.start_tracking("TOKEN", seen.append)
        await _spin(3)
        assert seen == [1.0]

        await tracker.stop_tracking("TOKEN")
        assert not tracker.is_tracking("TOKEN")
        assert tracker.last_price("TOKEN") is None

    asyncio.run(run())
