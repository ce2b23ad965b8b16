"""Tests for IdempotencyFilter."""

from __future__ import annotations

import pytest

from feedbus.idempotency import IdempotencyFilter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_mark_then_duplicate() -> None:
    f = IdempotencyFilter()
    assert await f.is_duplicate("m1") is False
    await f.mark_processed("m1")
    assert await f.is_duplicate("m1") is True
    assert await f.is_duplicate("m2") is False


@pytest.mark.asyncio
async def test_ids_expire_after_window() -> None:
    clock = FakeClock()
    f = IdempotencyFilter(window_seconds=60, clock=clock)
    await f.mark_processed("m1")
    clock.now += 59
    assert await f.is_duplicate("m1") is True
    clock.now += 2
    assert await f.is_duplicate("m1") is False
    assert len(f) == 0


@pytest.mark.asyncio
async def test_oldest_evicted_when_full() -> None:
    f = IdempotencyFilter(max_entries=2)
    for message_id in ("a", "b", "c"):
        await f.mark_processed(message_id)
    assert len(f) == 2
    assert await f.is_duplicate("a") is False
    assert await f.is_duplicate("c") is True


@pytest.mark.asyncio
async def test_claim_blocks_concurrent_delivery() -> None:
    f = IdempotencyFilter()
    assert await f.claim("m1") is True
    assert await f.claim("m1") is False
    await f.release("m1")
    assert await f.claim("m1") is True
    await f.mark_processed("m1")
    assert await f.claim("m1") is False


@pytest.mark.asyncio
async def test_clear_memory() -> None:
    f = IdempotencyFilter()
    await f.mark_processed("m1")
    await f.claim("m2")
    f.clear_memory()
    assert await f.claim("m1") is True
    assert await f.claim("m2") is True


@pytest.mark.parametrize("kwargs", [{"window_seconds": 0}, {"max_entries": 0}])
def test_invalid_configuration(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        IdempotencyFilter(**kwargs)  # type: ignore[arg-type]
