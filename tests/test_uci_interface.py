# tests/test_uci_interface.py
import threading
import time

import pytest

from harness.config import Clock, TimeControl
from harness.errors import (
    HandshakeFailed, ProtocolError, IllegalMove, TimeForfeit, Disconnect, Cancelled
)
from harness.opening_book import START_POSITION
from harness.uci_interface import EngineSession, SessionState, ReplyTiming, classify_reply

from conftest import fake_engine, FastSession


def clocks(base_ms=5000, increment_ms=0):
    tc = TimeControl(base_ms=base_ms, increment_ms=increment_ms)
    return Clock(tc), Clock(tc)


@pytest.mark.parametrize("elapsed, expected", [
    (0, ReplyTiming.ACCEPTED),
    (1000, ReplyTiming.ACCEPTED),
    (1001, ReplyTiming.LATE),
    (1100, ReplyTiming.LATE),
    (1101, ReplyTiming.FORFEIT),
])
def test_classify_reply(elapsed, expected):
    assert classify_reply(elapsed, 1000, 100) == expected


def test_classify_reply_monotone_in_margin():
    """Shrinking the margin can only turn an accepted reply into a forfeit"""
    accepted = {ReplyTiming.ACCEPTED, ReplyTiming.LATE}
    for budget in (0, 50, 1000):
        for elapsed in range(0, 1600, 37):
            previous = None
            for margin in range(500, -1, -25):
                ok = classify_reply(elapsed, budget, margin) in accepted
                if previous is not None:
                    assert not (ok and not previous)
                previous = ok


def test_handshake_reads_identity():
    session = FastSession(fake_engine("Alpha"))
    with session:
        assert session.state == SessionState.READY
        assert session.engine_id == "Alpha"
        assert session.author == "Tests"
        assert session.options["Hash"]["type"] == "spin"
        assert session.options["Hash"]["default"] == "16"
    assert session.state == SessionState.STOPPED
    assert session.process.poll() is not None


def test_handshake_timeout():
    session = FastSession(fake_engine("Mute", "--no-uciok", handshake_timeout=0.5))
    with pytest.raises(HandshakeFailed):
        session.start()
    assert session.state == SessionState.FAULTED
    session.stop()
    assert session.state == SessionState.STOPPED
    assert session.process.poll() is not None


def test_handshake_missing_binary(tmp_path):
    from harness.config import EngineConfig
    session = EngineSession(EngineConfig(name="ghost", path=str(tmp_path / "ghost")))
    with pytest.raises(HandshakeFailed):
        session.start()
    session.stop()


def test_think_returns_move_and_score():
    own, opponent = clocks()
    with FastSession(fake_engine("Alpha", "--score", "35")) as session:
        session.new_game()
        session.set_position(START_POSITION, [])
        move = session.think(own, opponent, white_to_move=True)

        assert move.uci == "g1f3"
        assert move.score_cp == 35
        assert not move.late
        assert session.state == SessionState.READY


def test_declared_no_move():
    own, opponent = clocks()
    with FastSession(fake_engine("Drawish", "--mode", "draw")) as session:
        session.set_position(START_POSITION)
        move = session.think(own, opponent, white_to_move=True)
        assert move.uci is None
        assert move.score_cp == 0


def test_late_reply_within_margin_is_accepted():
    own, opponent = clocks(base_ms=200)
    config = fake_engine("Slow", "--sleep-on", "1", "--sleep", "0.35", margin_ms=2000)
    with FastSession(config) as session:
        session.set_position(START_POSITION)
        move = session.think(own, opponent, white_to_move=True)
        assert move.late
        assert move.elapsed_ms > 200


def test_reply_beyond_margin_forfeits():
    own, opponent = clocks(base_ms=200)
    config = fake_engine("Slower", "--sleep-on", "1", "--sleep", "3", margin_ms=100)
    with FastSession(config) as session:
        session.set_position(START_POSITION)
        with pytest.raises(TimeForfeit) as info:
            session.think(own, opponent, white_to_move=True)
        assert info.value.engine == "Slower"
        assert session.state == SessionState.FAULTED


def test_invalid_move_token():
    own, opponent = clocks()
    with FastSession(fake_engine("Bad", "--bad-move-on", "1")) as session:
        session.set_position(START_POSITION)
        with pytest.raises(IllegalMove):
            session.think(own, opponent, white_to_move=True)


def test_malformed_bestmove():
    own, opponent = clocks()
    with FastSession(fake_engine("Broken", "--malformed-on", "1")) as session:
        session.set_position(START_POSITION)
        with pytest.raises(ProtocolError) as info:
            session.think(own, opponent, white_to_move=True)
        assert not isinstance(info.value, IllegalMove)


def test_exit_is_disconnect():
    own, opponent = clocks()
    with FastSession(fake_engine("Crashy", "--exit-on", "1")) as session:
        session.set_position(START_POSITION)
        with pytest.raises(Disconnect):
            session.think(own, opponent, white_to_move=True)
        assert session.state == SessionState.FAULTED


def test_think_requires_ready():
    own, opponent = clocks()
    session = FastSession(fake_engine("Cold"))
    with pytest.raises(ProtocolError):
        session.think(own, opponent, white_to_move=True)


def test_cancel_interrupts_wait():
    own, opponent = clocks(base_ms=10000)
    cancel = threading.Event()
    config = fake_engine("Sleeper", "--sleep-on", "1", "--sleep", "5")
    session = EngineSession(config, grace_period=0.2, cancel_event=cancel)
    with session:
        session.set_position(START_POSITION)
        threading.Timer(0.3, cancel.set).start()
        with pytest.raises(Cancelled):
            session.think(own, opponent, white_to_move=True)
    assert session.process.poll() is not None


def test_stop_is_idempotent():
    session = FastSession(fake_engine("Twice"))
    session.start()
    session.stop()
    session.stop()
    assert session.state == SessionState.STOPPED


def test_line_stamped_before_deadline_is_kept():
    # the reader stamped the line in time; this thread woke up too late
    session = EngineSession(fake_engine("idle"))
    now = time.monotonic()
    session.output_queue.put((now - 0.010, "bestmove e2e4"))

    assert session._next_line(deadline=now - 0.005) == (now - 0.010, "bestmove e2e4")
    assert session._next_line(deadline=now - 0.005) is None


def test_line_stamped_after_deadline_times_out():
    session = EngineSession(fake_engine("idle"))
    now = time.monotonic()
    session.output_queue.put((now - 0.001, "bestmove e2e4"))

    assert session._next_line(deadline=now - 0.005) is None
