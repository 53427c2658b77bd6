"""Tests for the keyed lock."""

import asyncio

import pytest

from pulsechain_wallet_tracker.cache.locks import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_runs_one_at_a_time_in_arrival_order(self) -> None:
        locks: KeyedLock[str] = KeyedLock()
        log: list[str] = []

        async def worker(name: str, delay: float) -> None:
            async with locks.hold("key"):
                log.append(f"{name}-start")
                await asyncio.sleep(delay)
                log.append(f"{name}-end")

        await asyncio.gather(worker("a", 0.02), worker("b", 0.0), worker("c", 0.0))

        assert log == ["a-start", "a-end", "b-start", "b-end", "c-start", "c-end"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self) -> None:
        locks: KeyedLock[str] = KeyedLock()
        release = asyncio.Event()
        entered: list[str] = []

        async def blocker() -> None:
            async with locks.hold("slow"):
                entered.append("slow")
                await release.wait()

        task = asyncio.create_task(blocker())
        await asyncio.sleep(0)

        async with locks.hold("fast"):
            entered.append("fast")

        assert entered == ["slow", "fast"]
        assert locks.locked("slow")
        assert not locks.locked("fast")

        release.set()
        await task

    @pytest.mark.asyncio
    async def test_idle_keys_are_released(self) -> None:
        locks: KeyedLock[tuple[str, str]] = KeyedLock()

        async with locks.hold(("w", "t")):
            assert len(locks) == 1

        assert len(locks) == 0
        assert not locks.locked(("w", "t"))

    @pytest.mark.asyncio
    async def test_lock_released_when_body_raises(self) -> None:
        locks: KeyedLock[str] = KeyedLock()

        with pytest.raises(ValueError):
            async with locks.hold("key"):
                raise ValueError("fail")

        assert len(locks) == 0
        async with locks.hold("key"):
            pass
