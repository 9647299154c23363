"""Tests for the countdown and progress ticker."""

from __future__ import annotations

import asyncio
import logging

import pytest

from ceremony.contribute.timers import Countdown, ProgressTicker
from ceremony.contribute.timing import TimeoutGuard


@pytest.mark.asyncio
async def test_countdown_signals_expiry():
    countdown = Countdown(TimeoutGuard(deadline_ms=1_000, clock=lambda: 2_000), interval_s=0.01)
    countdown.start()

    await asyncio.wait_for(countdown.expired.wait(), timeout=1)

    await countdown.cancel()
    assert not countdown.running


@pytest.mark.asyncio
async def test_countdown_logs_time_left(caplog):
    guard = TimeoutGuard(deadline_ms=3_725_000, clock=lambda: 0)
    with caplog.at_level(logging.INFO, logger="phase2.contribute.timers"):
        async with Countdown(guard, interval_s=0.01) as countdown:
            await asyncio.sleep(0.03)
            assert countdown.running
    assert not countdown.running
    assert not countdown.expired.is_set()
    assert "Contribution expires in 01:02:05" in caplog.text


@pytest.mark.asyncio
async def test_ticker_reports_eta(caplog):
    with caplog.at_level(logging.INFO, logger="phase2.contribute.timers"):
        async with ProgressTicker("Computing contribution", eta_ms=61_000, interval_s=0.01) as ticker:
            await asyncio.sleep(0.05)
    assert ticker.ticks >= 1
    assert not ticker.running
    assert "Computing contribution... 00:00:00 (ETA 00:01:01)" in caplog.text


@pytest.mark.asyncio
async def test_cancel_before_start_is_noop():
    ticker = ProgressTicker("idle")
    await ticker.cancel()
    assert not ticker.running
