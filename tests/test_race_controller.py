from dataclasses import replace
from datetime import datetime, timedelta, timezone
from itertools import groupby
from unittest.mock import patch

import numpy as np
import pytest

from derby_live.database.memory import InMemoryRaceStore, InMemoryRatingBook
from derby_live.engine.data_models import RacePhase
from derby_live.engine.race_loop import RaceSimulator
from derby_live.engine.ratings import RatingEngine
from derby_live.engine.telemetry import TelemetryCollector
from derby_live.errors import InsufficientCatalog, InvariantViolation, TransientStoreError
from derby_live.race_controller import RacePhaseController, validate_transition
from derby_live.roster import HorseRoster, StaticCatalog

NAMES = [f"Runner {i:02d}" for i in range(12)]


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def _controller(names=NAMES, actor="server-a", clock=None, store=None, book=None):
    clock = clock or FakeClock()
    store = store or InMemoryRaceStore(clock=clock)
    book = book or InMemoryRatingBook()
    engine = RatingEngine(book, verbose=False)
    roster = HorseRoster(StaticCatalog(names), engine, rng=np.random.default_rng(5))
    controller = RacePhaseController(
        store,
        engine,
        roster,
        actor_id=actor,
        clock=clock,
        seed_rng=np.random.default_rng(5),
        verbose=False,
    )
    return controller, clock, store, book


def _run_until(controller, clock, predicate, step=0.5, limit=400):
    for _ in range(limit):
        controller.advance_tick()
        state = controller.store.read()
        if predicate(state):
            return state
        clock.advance(step)
    raise AssertionError("race never reached the expected state")


def test_first_tick_assembles_a_race():
    controller, _, store, _ = _controller()
    result = controller.advance_tick()

    assert result.status == "advanced"
    assert result.phase is RacePhase.PRE_RACE
    state = store.read()
    assert state.race_id == 1
    assert len(state.contestants) == 8
    assert state.pre_race_timer == 10.0
    assert state.version == 1
    assert state.timer_owner == "server-a"


def test_duplicate_tick_without_clock_progress_changes_nothing():
    controller, clock, store, _ = _controller()
    controller.advance_tick()
    clock.advance(3.5)
    controller.advance_tick()
    before = store.read()

    result = controller.advance_tick()
    after = store.read()

    assert result.status == "unchanged"
    assert after.version == before.version
    assert after.payload() == before.payload()
    assert after.pre_race_timer == pytest.approx(6.5)


def test_full_lifecycle_runs_in_order():
    controller, clock, store, book = _controller()
    seen = []
    store.subscribe(lambda state: seen.append((state.race_id, state.phase)))

    _run_until(controller, clock, lambda s: s.race_id == 2)

    sequence = [key for key, _ in groupby(seen)]
    assert sequence == [
        (1, RacePhase.PRE_RACE),
        (1, RacePhase.COUNTDOWN),
        (1, RacePhase.RACING),
        (1, RacePhase.FINISHED),
        (2, RacePhase.PRE_RACE),
    ]
    assert book.is_settled(1)


def test_finished_race_is_settled_once():
    controller, clock, store, book = _controller()
    state = _run_until(controller, clock, lambda s: s.phase is RacePhase.FINISHED)

    assert [r.placement for r in state.results] == list(range(1, 9))
    times = [r.finish_time for r in state.results]
    assert all(b > a for a, b in zip(times, times[1:]))
    assert all(c.position == pytest.approx(1200.0) for c in state.contestants)
    for record in state.results:
        assert book.get_stats(record.name).total_races == 1
        assert book.get(record.name) == record.rating_after
    assert book.get_stats(state.results[0].name).wins == 1

    # Holding in Finished writes nothing and settles nothing again.
    clock.advance(5)
    assert controller.advance_tick().status == "unchanged"
    assert book.get_stats(state.results[0].name).total_races == 1


def test_racing_timers_follow_the_wall_clock():
    controller, clock, store, _ = _controller()
    _run_until(controller, clock, lambda s: s.phase is RacePhase.RACING)
    clock.advance(2.0)
    controller.advance_tick()

    state = store.read()
    assert state.race_timer == pytest.approx(2.0)
    assert state.sim_tick == 20
    assert state.countdown_timer == 0.0


def test_missed_ticks_catch_up_in_one_tick():
    controller, clock, store, book = _controller()
    _run_until(controller, clock, lambda s: s.phase is RacePhase.RACING)

    clock.advance(100)
    result = controller.advance_tick()

    assert result.phase is RacePhase.FINISHED
    assert store.read().phase is RacePhase.FINISHED
    assert controller.advance_tick().status == "unchanged"


def test_lost_completion_write_does_not_double_settle():
    controller, clock, store, book = _controller()
    original = store.conditional_write
    dropped = []

    def flaky(expected_version, actor_id, state):
        if state.phase is RacePhase.FINISHED and not dropped:
            dropped.append(state.race_id)
            return False
        return original(expected_version, actor_id, state)

    with patch.object(store, "conditional_write", side_effect=flaky):
        state = _run_until(controller, clock, lambda s: s.phase is RacePhase.FINISHED)

    assert dropped == [1]
    for record in state.results:
        assert book.get_stats(record.name).total_races == 1
        assert book.get(record.name) == record.rating_after


def test_rejected_results_leave_the_book_unsettled(capsys):
    controller, clock, store, book = _controller()
    _run_until(controller, clock, lambda s: s.phase is RacePhase.RACING)
    real_results = RaceSimulator.results

    def tied_for_first(simulator):
        records = real_results(simulator)
        return [records[0], replace(records[1], placement=1)] + records[2:]

    clock.advance(100)
    with patch.object(RaceSimulator, "results", autospec=True, side_effect=tied_for_first):
        result = controller.advance_tick()

    assert result.status == "error"
    assert "Refusing to write" in capsys.readouterr().out
    assert not book.is_settled(1)
    state = store.read()
    assert state.phase is RacePhase.RACING
    assert all(book.get_stats(c.name) is None for c in state.contestants)

    # The next clean tick settles the race normally.
    assert controller.advance_tick().phase is RacePhase.FINISHED
    assert book.is_settled(1)


def test_telemetry_is_not_duplicated_by_a_lost_write():
    controller, clock, store, _ = _controller()
    controller.telemetry = TelemetryCollector()
    original = store.conditional_write
    dropped = []

    def flaky(expected_version, actor_id, state):
        if state.phase is RacePhase.RACING and state.sim_tick > 0 and not dropped:
            dropped.append(state.sim_tick)
            return False
        return original(expected_version, actor_id, state)

    with patch.object(store, "conditional_write", side_effect=flaky):
        _run_until(controller, clock, lambda s: s.phase is RacePhase.FINISHED)

    assert dropped
    ticks = [frame.tick for frame in controller.telemetry.frames]
    assert ticks == list(range(1, len(ticks) + 1))
    assert ticks[-1] == store.read().sim_tick


def test_race_timer_holds_when_the_clock_steps_back():
    controller, clock, store, _ = _controller()
    _run_until(controller, clock, lambda s: s.phase is RacePhase.RACING)
    clock.advance(3.0)
    controller.advance_tick()
    assert store.read().race_timer == pytest.approx(3.0)

    clock.advance(-1.0)
    result = controller.advance_tick()

    assert result.status == "unchanged"
    assert store.read().race_timer >= 3.0


def test_store_failure_aborts_tick_and_next_tick_retries(capsys):
    controller, clock, store, _ = _controller()

    with patch.object(store, "read", side_effect=TransientStoreError("connection reset")):
        result = controller.advance_tick()
    assert result.status == "error"
    assert not result.ok
    assert "Store error" in capsys.readouterr().out

    assert controller.advance_tick().status == "advanced"
    assert store.read().race_id == 1


def test_invalid_state_is_never_written(capsys):
    controller, clock, store, _ = _controller()
    controller.advance_tick()
    before = store.read()

    def skip_countdown(current, now):
        broken = current.copy()
        broken.phase = RacePhase.RACING
        return broken

    with patch.object(controller, "_next_state", side_effect=skip_countdown):
        result = controller.advance_tick()

    assert result.status == "error"
    assert "Refusing to write" in capsys.readouterr().out
    assert store.read().version == before.version
    assert store.read().phase is RacePhase.PRE_RACE


def test_second_actor_is_skipped_while_timer_is_owned():
    clock = FakeClock()
    store = InMemoryRaceStore(clock=clock)
    owner, _, _, _ = _controller(actor="server-a", clock=clock, store=store)
    other, _, _, _ = _controller(actor="server-b", clock=clock, store=store)

    assert owner.advance_tick().status == "advanced"
    assert other.advance_tick().status == "skipped"
    assert store.read().timer_owner == "server-a"

    owner.relinquish()
    clock.advance(1)
    assert other.advance_tick().status == "advanced"
    assert store.read().timer_owner == "server-b"


def test_insufficient_catalog_reaches_the_caller():
    controller, _, store, _ = _controller(names=NAMES[:3])
    with pytest.raises(InsufficientCatalog):
        controller.advance_tick()
    assert store.read().contestants == []


def test_snapshot_and_relinquish():
    controller, _, store, _ = _controller()
    assert controller.snapshot() == {}

    controller.advance_tick()
    snapshot = controller.snapshot()
    assert snapshot["phase"] == "pre-race"
    assert snapshot["version"] == 1
    assert len(snapshot["contestants"]) == 8

    assert controller.relinquish()
    assert store.read().timer_owner is None
    assert not controller.relinquish()


def test_validate_transition_rejects_reused_race():
    controller, clock, store, _ = _controller()
    finished = _run_until(controller, clock, lambda s: s.phase is RacePhase.FINISHED)

    restarted = finished.copy()
    restarted.phase = RacePhase.PRE_RACE
    restarted.results = []
    with pytest.raises(InvariantViolation):
        validate_transition(finished, restarted)


def test_validate_transition_rejects_backwards_motion():
    controller, clock, store, _ = _controller()
    _run_until(controller, clock, lambda s: s.phase is RacePhase.RACING)
    clock.advance(3)
    controller.advance_tick()
    racing = store.read()

    moved_back = racing.copy()
    moved_back.contestants[0].position = racing.contestants[0].position - 1.0
    with pytest.raises(InvariantViolation):
        validate_transition(racing, moved_back)
