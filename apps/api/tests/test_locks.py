import asyncio

from storyvoice.locks import UserLocks

from .sync_helpers import USER_ID


def test_lock_is_released_from_table_after_use():
    locks = UserLocks()

    async def scenario():
        async with locks.hold(USER_ID):
            during = len(locks)
        async with locks.refresh("other-user"):
            pass
        return during

    during = asyncio.run(scenario())

    assert during == 1
    assert len(locks) == 0
    assert locks.is_refreshing() is False


def test_waiters_keep_the_lock_and_run_one_at_a_time():
    locks = UserLocks()
    events = []

    async def work(name):
        async with locks.hold(USER_ID):
            events.append(f"{name} start")
            await asyncio.sleep(0)
            events.append(f"{name} end")

    async def scenario():
        await asyncio.gather(work("a"), work("b"), work("c"))

    asyncio.run(scenario())

    assert events == ["a start", "a end", "b start", "b end", "c start", "c end"]
    assert len(locks) == 0


def test_released_lock_survives_an_exception():
    locks = UserLocks()

    async def scenario():
        try:
            async with locks.refresh(USER_ID):
                raise RuntimeError("boom")
        except RuntimeError:
            pass

    asyncio.run(scenario())

    assert len(locks) == 0
    assert locks.is_refreshing(USER_ID) is False
