"""
The race phase state machine.

One call to RacePhaseController.advance_tick() reads the authoritative race
row, derives every timer from the wall clock, performs at most one phase
transition, and writes the result back with a versioned conditional write.
A tick that loses any race (ownership, version, store failure) changes
nothing and the next tick simply recomputes from the row.
"""

from __future__ import annotations

import math
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import numpy as np

from derby_live.config import get_config
from derby_live.engine.data_models import RacePhase, RaceState, utc_now
from derby_live.engine.race_loop import TICK_SECONDS, TRACK_LENGTH, RaceSimulator
from derby_live.engine.ratings import RatingEngine
from derby_live.engine.telemetry import TelemetryCollector
from derby_live.errors import InvariantViolation, TransientStoreError
from derby_live.roster import POOL_SIZE, HorseRoster
from derby_live.timer_ownership import TimerOwnership

PRE_RACE_SECONDS = float(get_config('phases.pre_race_seconds', 10))
COUNTDOWN_SECONDS = float(get_config('phases.countdown_seconds', 5))
FINISHED_SECONDS = float(get_config('phases.finished_seconds', 15))

TICK_ADVANCED = "advanced"
TICK_UNCHANGED = "unchanged"
TICK_SKIPPED = "skipped"
TICK_CONFLICT = "conflict"
TICK_ERROR = "error"


@dataclass
class TickResult:
    status: str
    phase: Optional[RacePhase] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (TICK_ADVANCED, TICK_UNCHANGED, TICK_SKIPPED)


def default_actor_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _elapsed(now: datetime, since: datetime) -> float:
    return max(0.0, (now - since).total_seconds())


def validate_transition(previous: RaceState, new: RaceState, track_length: float = TRACK_LENGTH):
    """
    Raises InvariantViolation if new is not a legal successor of previous.
    """
    for timer in (new.pre_race_timer, new.countdown_timer, new.race_timer):
        if timer < 0:
            raise InvariantViolation(f"Negative timer in race #{new.race_id}: {timer}")

    lanes = [c.lane for c in new.contestants]
    if len(set(lanes)) != len(lanes) or sorted(lanes) != list(range(1, len(lanes) + 1)):
        raise InvariantViolation(f"Race #{new.race_id} lanes must be unique 1..N, got {lanes}")
    ids = [c.id for c in new.contestants]
    if len(set(ids)) != len(ids):
        raise InvariantViolation(f"Race #{new.race_id} has duplicate contestant ids.")
    for c in new.contestants:
        if not 0.0 <= c.position <= track_length:
            raise InvariantViolation(f"{c.name} position {c.position} is off the track.")

    if new.race_id != previous.race_id:
        fresh_race = previous.phase is RacePhase.FINISHED or not previous.contestants
        if new.race_id != previous.race_id + 1 or not fresh_race or new.phase is not RacePhase.PRE_RACE:
            raise InvariantViolation(
                f"Illegal new race: #{previous.race_id} ({previous.phase.value}) -> "
                f"#{new.race_id} ({new.phase.value})"
            )
        if not new.contestants:
            raise InvariantViolation(f"Race #{new.race_id} has no contestants.")
        if new.results or any(c.position != 0.0 or c.is_finished for c in new.contestants):
            raise InvariantViolation(f"Race #{new.race_id} must start with a clean field.")
        return

    legal = {previous.phase}
    if previous.phase is not RacePhase.FINISHED:
        legal.add(previous.phase.next_phase)
    if new.phase not in legal:
        raise InvariantViolation(
            f"Illegal phase change in race #{new.race_id}: {previous.phase.value} -> {new.phase.value}"
        )
    if ids != [c.id for c in previous.contestants]:
        raise InvariantViolation(f"Contestants of race #{new.race_id} changed after assembly.")

    if previous.phase is RacePhase.RACING:
        for before, after in zip(previous.contestants, new.contestants):
            if after.position < before.position:
                raise InvariantViolation(f"{after.name} moved backwards ({before.position} -> {after.position}).")
            if before.placement is not None and after.placement != before.placement:
                raise InvariantViolation(f"{after.name} placement changed from {before.placement}.")

    if new.phase is RacePhase.FINISHED:
        if previous.phase is RacePhase.FINISHED and new.results != previous.results:
            raise InvariantViolation(f"Results of race #{new.race_id} changed after finishing.")
        placements = [r.placement for r in new.results]
        if placements != list(range(1, len(new.contestants) + 1)):
            raise InvariantViolation(f"Race #{new.race_id} placements are not 1..N: {placements}")
        if sorted(r.contestant_id for r in new.results) != sorted(ids):
            raise InvariantViolation(f"Race #{new.race_id} results do not cover the field.")
        times = [r.finish_time for r in new.results]
        if any(b <= a for a, b in zip(times, times[1:])):
            raise InvariantViolation(f"Race #{new.race_id} finish times are not strictly increasing.")
    elif new.results:
        raise InvariantViolation(f"Race #{new.race_id} has results before finishing.")


class RacePhaseController:
    """
    Drives PreRace -> Countdown -> Racing -> Finished -> (new) PreRace.

    Args:
        store: race row store (read / claim_timer / release_timer / conditional_write).
        rating_engine: RatingEngine bound to the rating book.
        roster: HorseRoster used to assemble each new field.
        clock: callable returning the current aware UTC datetime.
    """

    def __init__(
        self,
        store,
        rating_engine: RatingEngine,
        roster: HorseRoster,
        actor_id: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
        pool_size: int = POOL_SIZE,
        telemetry: Optional[TelemetryCollector] = None,
        seed_rng: Optional[np.random.Generator] = None,
        verbose: bool = True,
    ):
        self.store = store
        self.rating_engine = rating_engine
        self.roster = roster
        self.actor_id = actor_id or default_actor_id()
        self.clock = clock
        self.pool_size = pool_size
        self.telemetry = telemetry
        self._pending_telemetry: Optional[TelemetryCollector] = None
        self.seed_rng = seed_rng if seed_rng is not None else np.random.default_rng()
        self.verbose = verbose
        self.ownership = TimerOwnership(store)

    def _log(self, message: str):
        if self.verbose:
            print(f"[RaceController] {message}")

    # --- Tick entry point ---

    def advance_tick(self) -> TickResult:
        """
        Runs one bounded tick.

        Store failures, lost claims, lost writes and invariant breaches are
        reported in the TickResult. InsufficientCatalog is raised to the caller.

        The rating book is settled only after the Finished state has passed
        validation, and simulated telemetry frames are kept only once the
        write that carries them has landed.
        """
        self._pending_telemetry = TelemetryCollector() if self.telemetry is not None else None
        try:
            if not self.ownership.claim(self.actor_id):
                return TickResult(TICK_SKIPPED, message="timer owned by another actor")

            current = self.store.read()
            if current is None:
                raise TransientStoreError("Race row missing after a successful claim.")

            now = self.clock()
            new_state = self._next_state(current, now)
            if new_state.payload() == current.payload():
                return TickResult(TICK_UNCHANGED, phase=current.phase)

            validate_transition(current, new_state)

            if current.phase is RacePhase.RACING and new_state.phase is RacePhase.FINISHED:
                start_ratings = {c.name: c.rating for c in new_state.contestants}
                new_state.results = self.rating_engine.settle_race(
                    new_state.race_id, new_state.results, start_ratings
                )

            if not self.store.conditional_write(current.version, self.actor_id, new_state):
                self._log(f"Write for race #{new_state.race_id} lost (expected version {current.version}). Retrying next tick.")
                return TickResult(TICK_CONFLICT, phase=current.phase, message="version or ownership changed")
        except TransientStoreError as e:
            print(f"!!! [RaceController] Store error, tick aborted: {e}")
            return TickResult(TICK_ERROR, message=str(e))
        except InvariantViolation as e:
            print(f"!!! [RaceController] Refusing to write invalid state: {e}")
            return TickResult(TICK_ERROR, message=str(e))

        if self._pending_telemetry is not None:
            for frame in self._pending_telemetry.export():
                self.telemetry.record_frame(frame)
        if new_state.race_id != current.race_id or new_state.phase is not current.phase:
            self._log(f"Race #{new_state.race_id}: {current.phase.value} -> {new_state.phase.value}")
        return TickResult(TICK_ADVANCED, phase=new_state.phase)

    def relinquish(self) -> bool:
        released = self.ownership.release(self.actor_id)
        if released:
            self._log(f"Released race timer ({self.actor_id}).")
        return released

    def snapshot(self) -> Dict[str, Any]:
        """The current race row as the plain dict viewers receive."""
        state = self.store.read()
        return state.to_dict() if state else {}

    # --- Phase handlers ---

    def _next_state(self, current: RaceState, now: datetime) -> RaceState:
        if not current.contestants:
            return self._new_race(current, now)

        handler = {
            RacePhase.PRE_RACE: self._tick_pre_race,
            RacePhase.COUNTDOWN: self._tick_countdown,
            RacePhase.RACING: self._tick_racing,
            RacePhase.FINISHED: self._tick_finished,
        }[current.phase]
        return handler(current.copy(), now)

    def _new_race(self, current: RaceState, now: datetime) -> RaceState:
        contestants = self.roster.assemble_race(self.pool_size)
        race_id = current.race_id + 1
        self._log(f"Assembled race #{race_id}:")
        for c in contestants:
            self._log(f"  -> Lane {c.lane}: {c.name} ({c.rating:.0f}) @ {c.odds:.2f}")
        return RaceState(
            race_id=race_id,
            phase=RacePhase.PRE_RACE,
            contestants=contestants,
            phase_started_at=now,
            pre_race_timer=PRE_RACE_SECONDS,
            seed=int(self.seed_rng.integers(0, 2**31 - 1)),
            timer_owner=current.timer_owner,
            version=current.version,
        )

    def _tick_pre_race(self, state: RaceState, now: datetime) -> RaceState:
        remaining = PRE_RACE_SECONDS - _elapsed(now, state.phase_started_at)
        if remaining > 0:
            state.pre_race_timer = remaining
            return state

        state.phase = RacePhase.COUNTDOWN
        state.phase_started_at = now
        state.pre_race_timer = 0.0
        state.countdown_timer = COUNTDOWN_SECONDS
        return state

    def _tick_countdown(self, state: RaceState, now: datetime) -> RaceState:
        remaining = COUNTDOWN_SECONDS - _elapsed(now, state.phase_started_at)
        if remaining > 0:
            state.countdown_timer = remaining
            return state

        for c in state.contestants:
            c.position = 0.0
            c.speed = 0.0
            c.finish_time = None
            c.placement = None
            c.surge_multiplier = 1.0
            c.surge_ticks_remaining = 0
        state.phase = RacePhase.RACING
        state.phase_started_at = now
        state.countdown_timer = 0.0
        state.race_timer = 0.0
        state.sim_tick = 0
        return state

    def _tick_racing(self, state: RaceState, now: datetime) -> RaceState:
        elapsed = _elapsed(now, state.phase_started_at)
        simulator = RaceSimulator(
            state.contestants,
            seed=state.seed,
            start_tick=state.sim_tick,
            telemetry=self._pending_telemetry,
        )
        target_tick = min(int(math.floor(elapsed / TICK_SECONDS + 1e-9)), simulator.max_ticks)
        for event in simulator.run_until(target_tick):
            marker = " (forced)" if event.forced else ""
            self._log(f"  -> {event.name} finishes #{event.placement} in {event.finish_time:.3f}s{marker}")

        state.sim_tick = simulator.tick_index
        # a clock stepping backwards must not rewind the displayed timer
        state.race_timer = max(state.race_timer, elapsed)
        if not simulator.is_complete:
            return state

        # ratings are attached in advance_tick once the results validate
        state.results = simulator.results()
        state.photo_finish = simulator.photo_finish
        state.phase = RacePhase.FINISHED
        state.phase_started_at = now
        if state.photo_finish:
            self._log(f"Race #{state.race_id} is a photo finish!")
        return state

    def _tick_finished(self, state: RaceState, now: datetime) -> RaceState:
        if _elapsed(now, state.phase_started_at) < FINISHED_SECONDS:
            return state
        return self._new_race(state, now)
