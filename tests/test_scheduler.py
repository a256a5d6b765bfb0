# tests/test_scheduler.py
import threading
from collections import Counter, defaultdict

import pytest

from harness.config import EngineConfig, MatchPlan, SprtConfig
from harness.errors import BookExhausted, Disconnect
from harness.game import Winner, Reason
from harness.results import ResultSink
from harness.scheduler import MatchScheduler
from harness.stats import Verdict
from harness.uci_interface import EngineSession, Move, SessionState

from conftest import fake_engine, FastSession, ScriptedSession

BASE = EngineConfig(name="base", path="base")
DEV = EngineConfig(name="dev", path="dev")


def test_repeat_slots_swap_colors(run_config, book_file):
    config = run_config(BASE, DEV, plan=MatchPlan(rounds=3, games_per_round=2, repeat_colors=True),
                        book_path=str(book_file), book_order="random", seed=1)
    slots = MatchScheduler(config).build_slots()

    assert len(slots) == 12
    assert [s.slot_id for s in slots] == list(range(12))

    by_pair = defaultdict(list)
    for slot in slots:
        by_pair[slot.pair_index].append(slot)
    for pair in by_pair.values():
        first, second = pair
        assert first.position == second.position
        assert first.a_is_white and not second.a_is_white
    assert [s.round_index for s in slots[::4]] == [0, 1, 2]


def test_without_repeat_colors_alternate(run_config):
    config = run_config(BASE, DEV, plan=MatchPlan(rounds=2, games_per_round=2, repeat_colors=False))
    slots = MatchScheduler(config).build_slots()
    assert [s.a_is_white for s in slots] == [True, False, True, False]


def test_slot_assignment_is_deterministic(run_config, book_file):
    config = run_config(BASE, DEV, plan=MatchPlan(rounds=4, games_per_round=2, concurrency=3),
                        book_path=str(book_file), book_order="random", seed=9)
    assert MatchScheduler(config).build_slots() == MatchScheduler(config).build_slots()


def test_book_exhausted_before_any_game(run_config, book_file, scripted):
    config = run_config(BASE, DEV, plan=MatchPlan(rounds=4, games_per_round=1),
                        book_path=str(book_file), allow_book_repeat=False)
    factory = scripted({})
    scheduler = MatchScheduler(config, session_factory=factory)
    with pytest.raises(BookExhausted):
        scheduler.run()
    assert scheduler.results == []


def test_driver_failures_do_not_abort_run(run_config, scripted):
    config = run_config(BASE, DEV, plan=MatchPlan(rounds=3, games_per_round=1, concurrency=2))
    factory = scripted({"base": [RuntimeError("driver bug")]})
    scheduler = MatchScheduler(config, session_factory=factory)

    results = scheduler.run()

    assert results["failed"] == 6
    assert results["games_played"] == 6
    assert results["aggregate"]["wins_b"] == 6
    assert all(g["reason"] == "disconnect" for g in results["games"])
    assert all("driver bug" in g["detail"] for g in results["games"])


def test_scripted_results_are_aggregated(run_config, scripted, tmp_path):
    config = run_config(BASE, DEV, plan=MatchPlan(rounds=4, games_per_round=1, concurrency=3))
    # dev reports mate on its first move: base wins every game
    factory = scripted({"dev": [Move(uci=None, elapsed_ms=1, score_mate=0)]})
    sink = ResultSink(str(tmp_path / "out"), "scripted")
    seen = []
    scheduler = MatchScheduler(config, sink=sink, session_factory=factory,
                               update_callback=lambda r, s: seen.append(s.completed))

    results = scheduler.run()

    assert results["aggregate"]["wins_a"] == 8
    assert results["games_played"] == 8
    assert sorted(seen) == list(range(1, 9))
    assert [g["slot"] for g in results["games"]] == list(range(8))
    assert all(g["reason"] == "checkmate" for g in results["games"])
    lines = (tmp_path / "out" / "scripted_games.jsonl").read_text().splitlines()
    assert len(lines) == 8


def test_sprt_stops_early(run_config, scripted):
    config = run_config(BASE, DEV, plan=MatchPlan(rounds=100, games_per_round=1, concurrency=1),
                        sprt=SprtConfig(elo0=0, elo1=10))
    factory = scripted({"base": [Move(uci=None, elapsed_ms=1, score_mate=0)]})
    scheduler = MatchScheduler(config, session_factory=factory)

    results = scheduler.run()

    assert results["stopped_early"]
    assert results["games_played"] < 200
    assert results["verdict"] == Verdict.H1_ACCEPTED.value
    assert results["aggregate"]["wins_b"] == results["games_played"]


def test_verdict_kept_when_running_games_finish_after_early_stop(run_config):
    release = threading.Event()
    lock = threading.Lock()
    created = Counter()

    class HeldSession(ScriptedSession):
        # blocks until the bound is crossed, then loses the game for dev
        def start(self):
            release.wait(timeout=10)
            self.state = SessionState.FAULTED
            raise Disconnect("dev went away", self.name)

    def factory(config, cancel_event=None):
        if config.name == "base":
            return ScriptedSession(config, [Move(uci=None, elapsed_ms=1, score_mate=0)], None, cancel_event)
        with lock:
            created["dev"] += 1
            held = created["dev"] <= 3
        session_class = HeldSession if held else ScriptedSession
        return session_class(config, [], None, cancel_event)

    def on_result(result, snapshot):
        if snapshot.finished:
            release.set()

    config = run_config(BASE, DEV, plan=MatchPlan(rounds=100, games_per_round=1, concurrency=4),
                        sprt=SprtConfig(elo0=0, elo1=5))
    scheduler = MatchScheduler(config, session_factory=factory, update_callback=on_result)

    results = scheduler.run()
    aggregate = results["aggregate"]

    assert results["stopped_early"]
    assert aggregate["wins_a"] == 3
    assert aggregate["verdict"] == Verdict.CONTINUE.value
    assert results["verdict"] == Verdict.H1_ACCEPTED.value
    assert results["verdict_after"] == aggregate["wins_b"]


def test_game_log_failure_does_not_stop_run(run_config, scripted, tmp_path):
    out = tmp_path / "out"
    sink = ResultSink(str(out), "broken")
    # the log path is taken by a directory, so every append fails
    (out / "broken_games.jsonl").mkdir()
    config = run_config(BASE, DEV, plan=MatchPlan(rounds=2, games_per_round=1, concurrency=2))
    factory = scripted({"dev": [Move(uci=None, elapsed_ms=1, score_mate=0)]})
    scheduler = MatchScheduler(config, sink=sink, session_factory=factory)

    results = scheduler.run()

    assert results["games_played"] == 4
    assert results["aggregate"]["wins_a"] == 4
    assert sink.write_report(results).exists()


def test_scenario_all_draws(run_config):
    config = run_config(
        fake_engine("drawA", "--mode", "draw"),
        fake_engine("drawB", "--mode", "draw"),
        plan=MatchPlan(rounds=5, games_per_round=2, repeat_colors=True, concurrency=4)
    )
    scheduler = MatchScheduler(config, session_factory=FastSession)

    results = scheduler.run()
    aggregate = results["aggregate"]

    assert results["games_played"] == 20
    assert (aggregate["wins_a"], aggregate["wins_b"], aggregate["draws"]) == (0, 0, 20)
    assert aggregate["wins_a"] + aggregate["wins_b"] + aggregate["draws"] == aggregate["completed"]


def test_scenario_candidate_flags_on_third_move(run_config):
    config = run_config(
        fake_engine("steady"),
        fake_engine("flagger", "--sleep-on", "3", "--sleep", "3", margin_ms=100),
        tc="0.5+0",
        plan=MatchPlan(rounds=2, games_per_round=1, repeat_colors=True, concurrency=4)
    )
    scheduler = MatchScheduler(config, session_factory=FastSession)

    results = scheduler.run()

    assert results["games_played"] == 4
    assert {g["white"] for g in results["games"]} == {"A", "B"}
    for game in results["games"]:
        assert game["winner"] == Winner.A.value
        assert game["reason"] == Reason.TIMEOUT.value


def test_scenario_random_book_six_games(run_config, book_file):
    config = run_config(
        fake_engine("drawA", "--mode", "draw"),
        fake_engine("drawB", "--mode", "draw"),
        plan=MatchPlan(rounds=6, games_per_round=1, repeat_colors=False, concurrency=3),
        book_path=str(book_file),
        book_order="random",
        seed=5
    )
    scheduler = MatchScheduler(config, session_factory=FastSession)

    results = scheduler.run()

    counts = Counter(g["position_index"] for g in results["games"])
    assert counts == {0: 2, 1: 2, 2: 2}


def test_cancel_drains_workers(run_config):
    sessions = []
    lock = threading.Lock()

    def factory(config, cancel_event=None):
        session = EngineSession(config, grace_period=0.2, cancel_event=cancel_event)
        with lock:
            sessions.append(session)
        return session

    config = run_config(
        fake_engine("sleepyA", "--sleep-on", "1", "--sleep", "10"),
        fake_engine("sleepyB", "--sleep-on", "1", "--sleep", "10"),
        tc="60+0",
        plan=MatchPlan(rounds=4, games_per_round=1, concurrency=2)
    )
    scheduler = MatchScheduler(config, session_factory=factory)
    threading.Timer(1.0, scheduler.cancel).start()

    results = scheduler.run()

    assert results["cancelled"]
    assert results["games_played"] == 0
    assert sessions
    assert all(s.process is None or s.process.poll() is not None for s in sessions)
