"""Tests for VoiceStatusMachine; timers run on a real loop with short delays."""

from __future__ import annotations

import asyncio
from typing import Any

from error_classifier import make_error
from errors import (
    CONNECTION_TIMEOUT,
    MAX_CONNECTION_ATTEMPTS_EXCEEDED,
    MAX_RETRIES_EXCEEDED,
    NETWORK_ERROR,
    PERMISSION_DENIED,
    TIMEOUT,
)
from models import ErrorKind, VoiceError, VoiceStatus
from voice_status import VoiceStatusMachine


class Events:
    def __init__(self) -> None:
        self.statuses: list[VoiceStatus] = []
        self.errors: list[VoiceError] = []
        self.timeouts = 0
        self.offline = 0

    def on_timeout(self) -> None:
        self.timeouts += 1

    def on_offline(self) -> None:
        self.offline += 1


def _machine(events: Events, **kwargs: Any) -> VoiceStatusMachine:
    options: dict[str, Any] = {
        "retry_delay_s": 0.02,
        "timeout_s": 0.05,
        "connection_timeout_s": 0.05,
    }
    options.update(kwargs)
    return VoiceStatusMachine(
        on_status_change=events.statuses.append,
        on_error=events.errors.append,
        on_timeout=events.on_timeout,
        on_offline_mode=events.on_offline,
        **options,
    )


def _network_error() -> VoiceError:
    return make_error(ErrorKind.NETWORK, NETWORK_ERROR)


# ---------------------------------------------------------------
# Initial state and status changes
# ---------------------------------------------------------------

def test_initial_state() -> None:
    machine = VoiceStatusMachine()
    assert machine.status == VoiceStatus.READY
    assert machine.is_ready
    assert machine.error is None
    assert machine.retry_count == 0
    assert machine.connection_attempts == 0
    assert machine.can_retry
    assert machine.can_connect
    assert machine.status_message() == "Ready to start voice recognition"
    assert machine.status_color() == "text-green-600"
    assert machine.status_icon() == "mic"


def test_set_status_notifies_and_updates_checks() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events)

        machine.set_status(VoiceStatus.CONNECTING)
        assert machine.is_connecting
        assert machine.status_message() == "Connecting to voice service... (Attempt 1/5)"
        assert machine.status_icon() == "clock"

        machine.set_status(VoiceStatus.PARSING)
        assert machine.is_processing
        assert machine.status_color() == "text-blue-600"
        assert machine.status_icon() == "refresh-cw"

        assert events.statuses == [VoiceStatus.CONNECTING, VoiceStatus.PARSING]
        machine.dispose()

    asyncio.run(_run())


def test_connected_resets_connection_attempts() -> None:
    async def _run() -> None:
        machine = _machine(Events())
        machine.set_error(make_error(ErrorKind.CONNECTION, CONNECTION_TIMEOUT))
        assert machine.connection_attempts == 1

        machine.set_status(VoiceStatus.CONNECTED)
        assert machine.connection_attempts == 0
        machine.dispose()

    asyncio.run(_run())


# ---------------------------------------------------------------
# Errors
# ---------------------------------------------------------------

def test_set_error_forces_error_status() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events)
        error = make_error(ErrorKind.PERMISSION, PERMISSION_DENIED)

        machine.set_error(error)

        assert machine.has_error
        assert machine.error is error
        assert machine.last_error_time is not None
        assert machine.status_message() == error.message
        assert machine.status_color() == "text-red-600"
        assert events.errors == [error]
        assert events.statuses == [VoiceStatus.ERROR]
        machine.dispose()

    asyncio.run(_run())


def test_clearing_error_keeps_status() -> None:
    async def _run() -> None:
        machine = _machine(Events())
        machine.set_error(make_error(ErrorKind.PERMISSION, PERMISSION_DENIED))

        machine.set_error(None)

        assert machine.error is None
        assert machine.last_error_time is None
        assert machine.has_error
        assert machine.status_message() == "An error occurred"

    asyncio.run(_run())


def test_only_connection_errors_count_attempts() -> None:
    async def _run() -> None:
        machine = _machine(Events())
        machine.set_error(make_error(ErrorKind.PERMISSION, PERMISSION_DENIED))
        assert machine.connection_attempts == 0
        machine.set_error(make_error(ErrorKind.CONNECTION, CONNECTION_TIMEOUT))
        machine.set_error(make_error(ErrorKind.CONNECTION, CONNECTION_TIMEOUT))
        assert machine.connection_attempts == 2
        machine.dispose()

    asyncio.run(_run())


def test_network_error_retries_automatically() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events, retry_delay_s=0.05)

        machine.set_error(_network_error())
        assert machine.has_error

        await asyncio.sleep(0.075)  # auto retry fired, waiting out the retry delay
        assert machine.is_retrying
        assert machine.retry_count == 1
        assert machine.error is None
        assert not machine.can_retry

        await asyncio.sleep(0.06)
        assert not machine.is_retrying
        assert machine.is_ready
        assert events.statuses[-1] == VoiceStatus.READY

    asyncio.run(_run())


def test_non_network_error_does_not_retry() -> None:
    async def _run() -> None:
        machine = _machine(Events())
        machine.set_error(make_error(ErrorKind.PERMISSION, PERMISSION_DENIED))
        await asyncio.sleep(0.1)
        assert machine.has_error
        assert machine.retry_count == 0

    asyncio.run(_run())


# ---------------------------------------------------------------
# Retry
# ---------------------------------------------------------------

def test_retry_budget_exhausted() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events, max_retries=1)

        machine.retry()
        await asyncio.sleep(0.04)
        assert machine.is_ready
        assert machine.retry_count == 1

        machine.retry()

        assert machine.has_error
        assert machine.error.code == MAX_RETRIES_EXCEEDED
        assert machine.error.kind == ErrorKind.API
        assert "(1)" in machine.error.message
        assert machine.retry_count == 1
        assert not machine.is_retrying
        await asyncio.sleep(0.05)
        assert machine.has_error

    asyncio.run(_run())


def test_retry_with_connection_budget_exhausted_goes_offline() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events, max_connection_attempts=2)
        for _ in range(2):
            machine.set_error(make_error(ErrorKind.CONNECTION, CONNECTION_TIMEOUT))
        assert not machine.can_connect

        machine.retry()

        assert machine.is_offline
        assert machine.error.code == MAX_CONNECTION_ATTEMPTS_EXCEEDED
        assert machine.retry_count == 0
        assert events.offline == 1
        assert machine.status_message() == "Working in offline mode"
        assert machine.status_icon() == "wifi-off"

    asyncio.run(_run())


def test_retry_without_offline_mode_stays_in_error() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events, max_connection_attempts=1, enable_offline_mode=False)
        machine.set_error(make_error(ErrorKind.CONNECTION, CONNECTION_TIMEOUT))

        machine.retry()

        assert machine.has_error
        assert machine.error.code == MAX_CONNECTION_ATTEMPTS_EXCEEDED
        assert events.offline == 0

    asyncio.run(_run())


# ---------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------

def test_listening_times_out() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events)

        machine.set_status(VoiceStatus.LISTENING)
        await asyncio.sleep(0.08)

        assert machine.is_timeout
        assert machine.error.code == TIMEOUT
        assert machine.error.kind == ErrorKind.API
        assert events.timeouts == 1
        assert machine.status_message() == "Operation timed out"

    asyncio.run(_run())


def test_status_change_rearms_timeout() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events)

        machine.set_status(VoiceStatus.LISTENING)
        await asyncio.sleep(0.03)
        machine.set_status(VoiceStatus.LISTENING)
        await asyncio.sleep(0.03)
        assert machine.is_listening

        machine.set_status(VoiceStatus.COMPLETE)
        await asyncio.sleep(0.08)
        assert machine.is_complete
        assert events.timeouts == 0

    asyncio.run(_run())


def test_connecting_times_out_as_connection_error() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events)

        machine.set_status(VoiceStatus.CONNECTING)
        await asyncio.sleep(0.08)

        assert machine.has_error
        assert machine.error.code == CONNECTION_TIMEOUT
        assert machine.connection_attempts == 1
        assert [e.code for e in events.errors] == [CONNECTION_TIMEOUT]
        assert machine.status_message() == "Connection timeout. Please check your internet connection."

    asyncio.run(_run())


def test_reset_cancels_timers_and_restores_defaults() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events)
        machine.set_error(_network_error())
        machine.set_status(VoiceStatus.LISTENING)
        machine.add_to_offline_queue(lambda: None)

        machine.reset()
        await asyncio.sleep(0.1)

        assert machine.is_ready
        assert machine.error is None
        assert machine.retry_count == 0
        assert machine.offline_queue_size == 0
        assert events.timeouts == 0

    asyncio.run(_run())


# ---------------------------------------------------------------
# Offline queue
# ---------------------------------------------------------------

def test_offline_queue_runs_in_order_and_survives_failures() -> None:
    machine = VoiceStatusMachine()
    calls: list[str] = []

    def broken() -> None:
        calls.append("broken")
        raise RuntimeError("nope")

    machine.add_to_offline_queue(lambda: calls.append("first"))
    machine.add_to_offline_queue(broken)
    machine.add_to_offline_queue(lambda: calls.append("last"))
    assert machine.offline_queue_size == 3

    machine.process_offline_queue()

    assert calls == ["first", "broken", "last"]
    assert machine.offline_queue_size == 0


def test_offline_queue_disabled() -> None:
    machine = VoiceStatusMachine(enable_offline_mode=False)
    machine.add_to_offline_queue(lambda: None)
    assert machine.offline_queue_size == 0


def test_force_offline_and_go_online() -> None:
    async def _run() -> None:
        events = Events()
        machine = _machine(events)
        ran: list[int] = []

        machine.force_offline()
        assert machine.is_offline
        assert events.offline == 1
        machine.add_to_offline_queue(lambda: ran.append(1))

        machine.go_online()

        assert machine.is_ready
        assert ran == [1]
        assert machine.offline_queue_size == 0

    asyncio.run(_run())


def test_force_offline_ignored_when_disabled() -> None:
    machine = VoiceStatusMachine(enable_offline_mode=False)
    machine.force_offline()
    assert machine.is_ready


def test_time_since_last_activity_uses_clock() -> None:
    now = [100.0]
    machine = VoiceStatusMachine(clock=lambda: now[0])
    now[0] = 102.5
    assert machine.time_since_last_activity() == 2500
