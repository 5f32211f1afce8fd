"""
Tests for the startup checks.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from services.readiness import wait_until_ready


class TestWaitUntilReady:

    @pytest.mark.asyncio
    async def test_retries_until_check_succeeds(self):
        check = AsyncMock(side_effect=[ConnectionError("refused"), ConnectionError("refused"), None])

        assert await wait_until_ready("Database", check, attempts=5, delay=0) is True
        assert check.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        check = AsyncMock(side_effect=ConnectionError("refused"))

        assert await wait_until_ready("Redis", check, attempts=3, delay=0) is False
        assert check.await_count == 3

    @pytest.mark.asyncio
    async def test_stop_event_ends_polling(self):
        check = AsyncMock()
        stop = asyncio.Event()
        stop.set()

        assert await wait_until_ready("Redis", check, stop=stop) is False
        check.assert_not_awaited()
