"""Tests for the periodic refresh policy (60s cadence, 70s minimum validity)."""

import asyncio

import pytest

from dashboard_session.session_data import SessionHandle, SessionStatus
from dashboard_session.session_manager import RefreshTimer, SessionManager


@pytest.mark.asyncio
async def test_timer_created_on_authentication(manager, settings):
    await manager.initialize()

    timer = manager.refresh_timer
    assert timer is not None
    assert timer.interval == settings.REFRESH_INTERVAL_SECONDS
    assert timer.min_validity == settings.REFRESH_MIN_VALIDITY_SECONDS
    await manager.shutdown()


@pytest.mark.asyncio
async def test_tick_refreshes_when_validity_below_threshold(manager, idp, clock):
    await manager.initialize()
    clock.advance(235)  # 65s of a 300s token left

    assert await manager.refresh_timer.tick() is True
    assert len(idp.refresh_calls) == 1
    await manager.shutdown()


@pytest.mark.asyncio
async def test_tick_skips_when_validity_above_threshold(manager, idp, clock):
    await manager.initialize()
    clock.advance(200)  # 100s left

    assert await manager.refresh_timer.tick() is False
    assert idp.refresh_calls == []
    await manager.shutdown()


@pytest.mark.asyncio
async def test_timer_survives_refresh(manager, idp, clock):
    await manager.initialize()
    timer = manager.refresh_timer
    clock.advance(240)
    await timer.tick()

    assert manager.refresh_timer is timer
    clock.advance(60)
    assert await timer.tick() is False
    assert len(idp.refresh_calls) == 1
    await manager.shutdown()


@pytest.mark.asyncio
async def test_short_lived_tokens_refresh_every_tick(idp, navigator, settings, clock):
    idp.expires_in = 30
    manager = SessionManager(SessionHandle(client=idp), navigator, settings=settings, clock=clock)
    await manager.initialize()

    for _ in range(3):
        clock.advance(settings.REFRESH_INTERVAL_SECONDS)
        assert await manager.refresh_timer.tick() is True

    assert len(idp.refresh_calls) == 3
    assert manager.state.status is SessionStatus.AUTHENTICATED
    await manager.shutdown()


@pytest.mark.asyncio
async def test_failed_tick_ends_session_and_stops_timer(manager, idp, clock):
    await manager.initialize()
    timer = manager.refresh_timer
    idp.refresh_error = RuntimeError("refresh token expired")
    clock.advance(290)

    assert await timer.tick() is False
    assert manager.state.status is SessionStatus.UNAUTHENTICATED
    assert timer.cancelled is True
    assert manager.refresh_timer is None


@pytest.mark.asyncio
async def test_timer_loop_calls_refresh_each_interval():
    calls = []

    async def refresh(min_validity):
        calls.append(min_validity)
        return False

    timer = RefreshTimer(refresh, interval=0.01, min_validity=70)
    timer.start()
    await asyncio.sleep(0.055)
    timer.cancel()
    count = len(calls)
    await asyncio.sleep(0.03)

    assert count >= 2
    assert len(calls) == count
    assert set(calls) == {70}
