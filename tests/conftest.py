"""Pytest configuration and fixtures."""

import asyncio
from collections.abc import Awaitable, Callable

import pytest


@pytest.fixture
def sample_wallet() -> str:
    """Sample wallet address for testing."""
    return "0xabc0000000000000000000000000000000000abc"


@pytest.fixture
def sample_token() -> str:
    """Sample ERC20 token address for testing."""
    return "0xdef0000000000000000000000000000000000def"


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll a condition on the event loop until it holds or a timeout expires."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
