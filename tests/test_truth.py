import asyncio
import datetime as dt

import pytest

from stream_guard.session import SessionStatus
from stream_guard.truth import (
    OUTPUT_STARTED,
    OUTPUT_STARTING,
    OUTPUT_STOPPED,
    EndReason,
    StreamState,
    StreamTruth,
)

from tests.fakes import T0, FakeClock, session_dict, write_schedule


@pytest.fixture
def truth(store, clock):
    return StreamTruth(store, expected_disconnect_window_ms=4000, clock=clock)


def test_manual_stop_while_live(truth):
    truth.mark_live()
    truth.mark_stop_initiated(EndReason.MANUAL)
    assert truth.state == StreamState.ENDING
    assert truth.end_reason == EndReason.MANUAL


def test_crash_does_not_replace_a_sent_manual_stop(truth):
    truth.mark_live()
    truth.mark_stop_initiated(EndReason.MANUAL)
    truth.mark_end_signal_sent()
    truth.mark_ended(EndReason.CRASH)
    assert truth.state == StreamState.ENDED
    assert truth.end_reason == EndReason.MANUAL


def test_crash_before_stop_signal_wins(truth):
    truth.mark_live()
    truth.mark_stop_initiated(EndReason.MANUAL)
    truth.mark_ended(EndReason.CRASH)
    assert truth.end_reason == EndReason.CRASH


def test_crash_is_sticky_until_idle(truth):
    truth.mark_live()
    truth.mark_ended(EndReason.CRASH)

    truth.mark_live()
    assert truth.end_reason == EndReason.CRASH
    truth.mark_stop_initiated(EndReason.MANUAL)
    truth.mark_ended(EndReason.DURATION)
    assert truth.end_reason == EndReason.CRASH

    truth.mark_idle()
    assert truth.end_reason is None
    assert truth.active_session_id is None


def test_live_clears_manual_reason_and_sent_flag(truth):
    truth.mark_live()
    truth.mark_stop_initiated(EndReason.DURATION)
    truth.mark_end_signal_sent()
    truth.mark_live()
    assert truth.end_reason is None
    assert truth.end_signal_sent is False


def test_stop_from_idle_enters_ending(truth):
    truth.mark_stop_initiated(EndReason.MANUAL)
    assert truth.state == StreamState.ENDING


def test_ending_is_not_reentered_from_ended(truth):
    truth.mark_live()
    truth.mark_ended(EndReason.AUTOSTOP)
    truth.mark_stop_initiated(EndReason.MANUAL)
    assert truth.state == StreamState.ENDED


def test_expected_disconnect_window(truth, clock):
    assert truth.is_expected_disconnect() is False
    truth.mark_end_signal_sent()
    clock.advance(3.9)
    assert truth.is_expected_disconnect() is True
    clock.advance(0.2)
    assert truth.is_expected_disconnect() is False


def test_end_signal_timestamp_is_not_moved_by_resend(truth, clock):
    truth.mark_end_signal_sent()
    first = truth.end_signal_sent_at
    clock.advance(2.0)
    truth.mark_end_signal_sent()
    assert truth.end_signal_sent_at == first


def test_expected_disconnect_is_not_a_crash(truth, clock):
    truth.mark_live()
    truth.mark_stop_initiated(EndReason.AUTOSTOP)
    truth.mark_end_signal_sent()
    clock.advance(1.0)
    truth.on_connection_closed()
    assert truth.state == StreamState.ENDING
    assert truth.end_reason == EndReason.AUTOSTOP


def test_unexpected_disconnect_terminates_active_session(truth, store, schedule_path, now):
    write_schedule(schedule_path, [session_dict("a", T0)])
    now.set(T0 + dt.timedelta(minutes=5))
    truth.mark_live("a")

    truth.on_connection_closed()

    assert truth.state == StreamState.ENDED
    assert truth.end_reason == EndReason.CRASH
    assert truth.active_session_id is None
    assert store.get("a").status == SessionStatus.TERMINATED


def test_disconnect_while_idle_changes_nothing(truth):
    seen = []
    truth.subscribe(seen.append)
    truth.on_connection_closed()
    assert truth.state == StreamState.IDLE
    assert seen == []


def test_reference_flag_follows_active_session(truth, schedule_path):
    write_schedule(schedule_path, [
        session_dict("a", T0, stopFramePath="/frames/a.png"),
        session_dict("b", T0),
    ])
    truth.mark_live("a")
    assert truth.context().has_reference_frame is True
    truth.set_active_session("b")
    assert truth.context().has_reference_frame is False


def test_publish_only_on_visible_change(truth):
    seen = []
    truth.subscribe(seen.append)
    truth.mark_live()
    truth.mark_live()
    truth.mark_end_signal_sent()
    truth.set_active_session(None)
    truth.mark_stop_initiated(EndReason.MANUAL)
    truth.mark_stop_initiated(EndReason.MANUAL)
    assert [c.stream_state for c in seen] == [StreamState.LIVE, StreamState.ENDING]


def test_active_session_ignored_while_idle(truth):
    truth.set_active_session("a")
    assert truth.active_session_id is None


def test_listener_failure_does_not_stop_others(truth):
    seen = []

    def broken(ctx):
        raise RuntimeError("boom")

    truth.subscribe(broken)
    truth.subscribe(seen.append)
    truth.mark_live()
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_output_stopped_moves_ended_to_idle(store):
    truth = StreamTruth(store, clock=FakeClock(), ended_to_idle_delay=0.01)
    truth.mark_live()
    truth.mark_ended(EndReason.DURATION)
    truth.on_output_state_changed(OUTPUT_STOPPED)
    await asyncio.sleep(0.05)
    assert truth.state == StreamState.IDLE
    assert truth.end_reason is None


@pytest.mark.asyncio
@pytest.mark.parametrize("restart", [OUTPUT_STARTING, OUTPUT_STARTED])
async def test_output_starting_cancels_idle_transition(store, restart):
    truth = StreamTruth(store, clock=FakeClock(), ended_to_idle_delay=0.01)
    truth.mark_live()
    truth.mark_ended(EndReason.MANUAL)
    truth.on_output_state_changed(OUTPUT_STOPPED)
    truth.on_output_state_changed(restart)
    await asyncio.sleep(0.05)
    # restarted from OBS: a new unscheduled episode, not idle
    assert truth.state == StreamState.LIVE
    assert truth.end_reason is None
    assert truth.active_session_id is None


@pytest.mark.asyncio
async def test_idle_timer_needs_ended_state(store):
    truth = StreamTruth(store, clock=FakeClock(), ended_to_idle_delay=0.01)
    truth.mark_live()
    truth.on_output_state_changed(OUTPUT_STOPPED)
    await asyncio.sleep(0.05)
    assert truth.state == StreamState.LIVE


def test_output_started_while_idle_is_adopted(truth):
    truth.on_output_state_changed(OUTPUT_STARTED)
    assert truth.state == StreamState.LIVE
    assert truth.active_session_id is None


def test_output_started_after_crash_starts_clean_episode(truth):
    truth.mark_live()
    truth.on_connection_closed()
    assert truth.end_reason == EndReason.CRASH

    truth.on_output_state_changed(OUTPUT_STARTING)
    assert truth.state == StreamState.LIVE
    assert truth.end_reason is None


def test_output_started_keeps_scheduled_session(truth):
    truth.mark_live("a")
    truth.on_output_state_changed(OUTPUT_STARTED)
    assert truth.active_session_id == "a"
