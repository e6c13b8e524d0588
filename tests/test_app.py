"""Tests for the application lifespan."""

import asyncio
from unittest.mock import AsyncMock

from rendezvous.app import main


async def test_lifespan_waits_for_background_loops(monkeypatch):
    stopped = []

    def _loop(name):
        async def _run():
            try:
                await asyncio.Event().wait()
            finally:
                stopped.append(name)
        return _run

    monkeypatch.setattr(main, "init_db", AsyncMock())
    monkeypatch.setattr(main, "notification_retry_loop", _loop("retry"))
    monkeypatch.setattr(main, "reminder_monitor_loop", _loop("reminder"))

    async with main.lifespan(main.app):
        await asyncio.sleep(0)

    # Both loops have unwound by the time shutdown returns
    assert sorted(stopped) == ["reminder", "retry"]
