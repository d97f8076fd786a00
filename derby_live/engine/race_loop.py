from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from derby_live.config import get_config
from derby_live.engine.data_models import Contestant, FinishRecord, KineticPhase
from derby_live.engine.ratings import normalize_rating
from derby_live.engine.telemetry import TelemetryCollector, TelemetryFrame, TelemetryRacerFrame

TRACK_LENGTH = float(get_config('race.track_length', 1200))
TICK_SECONDS = float(get_config('race.tick_seconds', 0.1))
MAX_RACE_SECONDS = float(get_config('race.max_race_seconds', 60))
PHOTO_FINISH_GAP = float(get_config('race.photo_finish_gap', 0.05))

BASE_SPEED = get_config('kinetics.base_speed', 38.0)
MIN_MULTIPLIER = get_config('kinetics.min_multiplier', 0.65)
MAX_MULTIPLIER = get_config('kinetics.max_multiplier', 1.6)
PACK_END = get_config('kinetics.pack_end', 0.40)
SPRINT_START = get_config('kinetics.sprint_start', 0.60)
FINAL_STRETCH = get_config('kinetics.final_stretch', 0.90)
PACK_WINDOW = get_config('kinetics.pack_window', 12.0)
PACK_PULL = get_config('kinetics.pack_pull', 0.08)
PACK_NOISE = get_config('kinetics.pack_noise', 0.06)
PACK_RATING_WEIGHT = get_config('kinetics.pack_rating_weight', 0.01)
SPRINT_RATING_BONUS = get_config('kinetics.sprint_rating_bonus', 0.25)
SPRINT_FATIGUE = get_config('kinetics.sprint_fatigue', 0.15)
SPRINT_NOISE = get_config('kinetics.sprint_noise', 0.03)
SURGE_CHANCE = get_config('kinetics.surge_chance', 0.02)
SURGE_TICKS = get_config('kinetics.surge_ticks', [5, 15])
SURGE_RANGE = get_config('kinetics.surge_range', [1.15, 1.3])
FADE_RANGE = get_config('kinetics.fade_range', [0.75, 0.85])
FINAL_BOOST = get_config('kinetics.final_boost', 0.08)

# Keeps two horses crossing in the same instant apart without
# visibly moving anyone's time.
LANE_TIE_BREAK = 1e-6
POSITION_TIE_BREAK = 1e-7
MIN_FINISH_SEPARATION = 1e-6

# Columns of the per-tick random draw, one row per contestant.
_RNG_PACK_NOISE, _RNG_SPRINT_NOISE, _RNG_SURGE_ROLL, _RNG_SURGE_DIRECTION, _RNG_SURGE_SIZE, _RNG_SURGE_LENGTH = range(6)
_RNG_COLUMNS = 6


@dataclass
class FinishEvent:
    contestant_id: str
    name: str
    lane: int
    placement: int
    finish_time: float
    forced: bool = False


@dataclass
class TickReport:
    tick: int
    time: float
    kinetic_phase: KineticPhase
    progress: float
    finishes: List[FinishEvent] = field(default_factory=list)
    complete: bool = False


def kinetic_phase_for(progress: float) -> KineticPhase:
    if progress < PACK_END:
        return KineticPhase.PACK
    if progress < SPRINT_START:
        return KineticPhase.TRANSITION
    return KineticPhase.SPRINT


def sprint_weight(progress: float) -> float:
    """0 in the pack, 1 in the sprint, linear through the transition band."""
    return float(np.clip((progress - PACK_END) / (SPRINT_START - PACK_END), 0.0, 1.0))


class RaceSimulator:
    """
    Fixed-step race kinetics for one field.

    Contestants are mutated in place. Every tick draws its randomness from a
    generator seeded by (race seed, tick index), so replaying a race from any
    saved tick reproduces the same positions no matter how the ticks were
    batched.
    """

    def __init__(
        self,
        contestants: Sequence[Contestant],
        seed: int = 0,
        track_length: float = TRACK_LENGTH,
        dt: float = TICK_SECONDS,
        max_time: float = MAX_RACE_SECONDS,
        start_tick: int = 0,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        if not contestants:
            raise ValueError("RaceSimulator needs at least one contestant.")
        lanes = [c.lane for c in contestants]
        if len(set(lanes)) != len(lanes):
            raise ValueError("Contestant lanes must be unique.")

        self.contestants = list(contestants)
        self.seed = int(seed)
        self.track_length = float(track_length)
        self.dt = float(dt)
        self.max_ticks = int(round(max_time / self.dt))
        self.tick_index = int(start_tick)
        self.telemetry = telemetry
        self._finish_order: List[str] = [
            c.id for c in sorted(
                (c for c in self.contestants if c.is_finished),
                key=lambda c: c.placement,
            )
        ]

    @property
    def elapsed(self) -> float:
        return self.tick_index * self.dt

    @property
    def progress(self) -> float:
        positions = [c.position for c in self.contestants]
        return float(np.mean(positions)) / self.track_length

    @property
    def is_complete(self) -> bool:
        return all(c.is_finished for c in self.contestants)

    @property
    def finish_order(self) -> List[str]:
        return list(self._finish_order)

    def _rng(self) -> np.random.Generator:
        return np.random.default_rng([self.seed, self.tick_index])

    def _pack_multiplier(self, contestant: Contestant, centroid: float, rating_norm: float, noise: float) -> float:
        offset = contestant.position - centroid
        pull = -float(np.clip(offset / PACK_WINDOW, -1.0, 1.0)) * PACK_PULL
        jitter = (2.0 * noise - 1.0) * PACK_NOISE
        return 1.0 + pull + jitter + PACK_RATING_WEIGHT * (rating_norm - 0.5)

    def _sprint_multiplier(self, contestant: Contestant, progress: float, rating_norm: float, draws) -> float:
        stretch = float(np.clip((progress - SPRINT_START) / (1.0 - SPRINT_START), 0.0, 1.0))
        multiplier = 1.0 + SPRINT_RATING_BONUS * (rating_norm - 0.5)
        multiplier *= 1.0 - SPRINT_FATIGUE * stretch * (1.0 - rating_norm)
        multiplier += (2.0 * draws[_RNG_SPRINT_NOISE] - 1.0) * SPRINT_NOISE

        if contestant.surge_ticks_remaining > 0:
            contestant.surge_ticks_remaining -= 1
            if contestant.surge_ticks_remaining == 0:
                contestant.surge_multiplier = 1.0
        elif progress >= SPRINT_START and draws[_RNG_SURGE_ROLL] < SURGE_CHANCE:
            # Stronger horses surge more often than they fade.
            surge_odds = 0.5 + 0.3 * (rating_norm - 0.5)
            low, high = SURGE_RANGE if draws[_RNG_SURGE_DIRECTION] < surge_odds else FADE_RANGE
            contestant.surge_multiplier = low + (high - low) * draws[_RNG_SURGE_SIZE]
            contestant.surge_ticks_remaining = int(
                SURGE_TICKS[0] + round((SURGE_TICKS[1] - SURGE_TICKS[0]) * draws[_RNG_SURGE_LENGTH])
            )
        multiplier *= contestant.surge_multiplier

        if contestant.position >= FINAL_STRETCH * self.track_length:
            multiplier *= 1.0 + FINAL_BOOST * rating_norm
        return multiplier

    def speed_multiplier(self, contestant: Contestant, progress: float, centroid: float, draws) -> float:
        rating_norm = normalize_rating(contestant.rating)
        weight = sprint_weight(progress)
        pack = self._pack_multiplier(contestant, centroid, rating_norm, draws[_RNG_PACK_NOISE])
        if weight <= 0.0:
            multiplier = pack
        else:
            sprint = self._sprint_multiplier(contestant, progress, rating_norm, draws)
            multiplier = (1.0 - weight) * pack + weight * sprint
        return float(np.clip(multiplier, MIN_MULTIPLIER, MAX_MULTIPLIER))

    def advance(self, dt: Optional[float] = None) -> List[str]:
        """
        Moves every running contestant forward one tick.

        Returns the ids of contestants that crossed the line during this tick;
        their interpolated finish time is stored, placement waits for
        check_finishes().
        """
        step = self.dt if dt is None else float(dt)
        tick_start = self.elapsed
        progress = self.progress
        centroid = progress * self.track_length
        draws = self._rng().random((len(self.contestants), _RNG_COLUMNS))
        crossed = []
        frame_racers = []

        for idx, contestant in enumerate(self.contestants):
            previous = contestant.position
            if contestant.finish_time is not None:
                contestant.speed = 0.0
            else:
                multiplier = self.speed_multiplier(contestant, progress, centroid, draws[idx])
                speed = BASE_SPEED * multiplier
                travel = speed * step
                contestant.speed = speed
                if previous + travel >= self.track_length:
                    fraction = (self.track_length - previous) / travel
                    tie_break = contestant.lane * LANE_TIE_BREAK + (previous % 1.0) * POSITION_TIE_BREAK
                    contestant.finish_time = tick_start + fraction * step + tie_break
                    contestant.position = self.track_length
                    crossed.append(contestant.id)
                else:
                    contestant.position = previous + travel

            if self.telemetry is not None:
                frame_racers.append(
                    TelemetryRacerFrame(
                        contestant_id=contestant.id,
                        name=contestant.name,
                        lane=contestant.lane,
                        position=contestant.position,
                        distance_delta=contestant.position - previous,
                        speed=contestant.speed,
                        multiplier=contestant.speed / BASE_SPEED,
                        surge_multiplier=contestant.surge_multiplier,
                        is_finished=contestant.finish_time is not None,
                    )
                )

        self.tick_index += 1
        if self.telemetry is not None:
            self.telemetry.record_frame(
                TelemetryFrame(
                    tick=self.tick_index,
                    time=self.elapsed,
                    kinetic_phase=kinetic_phase_for(progress).value,
                    progress=progress,
                    racers=frame_racers,
                )
            )
        return crossed

    def _last_finish_time(self) -> Optional[float]:
        if not self._finish_order:
            return None
        by_id = {c.id: c for c in self.contestants}
        return by_id[self._finish_order[-1]].finish_time

    def check_finishes(self) -> List[FinishEvent]:
        """Assigns placements to contestants that crossed but are not yet placed."""
        pending = sorted(
            (c for c in self.contestants if c.finish_time is not None and c.placement is None),
            key=lambda c: (c.finish_time, c.lane),
        )
        events = []
        last_time = self._last_finish_time()
        for contestant in pending:
            if last_time is not None and contestant.finish_time <= last_time:
                contestant.finish_time = last_time + MIN_FINISH_SEPARATION
            contestant.placement = len(self._finish_order) + 1
            self._finish_order.append(contestant.id)
            last_time = contestant.finish_time
            events.append(
                FinishEvent(
                    contestant_id=contestant.id,
                    name=contestant.name,
                    lane=contestant.lane,
                    placement=contestant.placement,
                    finish_time=contestant.finish_time,
                )
            )
        return events

    def force_finish(self) -> List[FinishEvent]:
        """
        Safety bound: places everyone still running by distance covered,
        with a finish time projected from the remaining distance at base speed.
        """
        remaining = sorted(
            (c for c in self.contestants if not c.is_finished),
            key=lambda c: (-c.position, c.lane),
        )
        events = []
        last_time = self._last_finish_time()
        cutoff = self.max_ticks * self.dt
        for contestant in remaining:
            projected = cutoff + (self.track_length - contestant.position) / BASE_SPEED
            if last_time is not None and projected <= last_time:
                projected = last_time + MIN_FINISH_SEPARATION
            contestant.finish_time = projected
            contestant.placement = len(self._finish_order) + 1
            contestant.speed = 0.0
            self._finish_order.append(contestant.id)
            last_time = projected
            events.append(
                FinishEvent(
                    contestant_id=contestant.id,
                    name=contestant.name,
                    lane=contestant.lane,
                    placement=contestant.placement,
                    finish_time=projected,
                    forced=True,
                )
            )
        return events

    def step(self) -> TickReport:
        progress = self.progress
        self.advance()
        finishes = self.check_finishes()
        if not self.is_complete and self.tick_index >= self.max_ticks:
            print(f"Warning: race exceeded {self.max_ticks} ticks. Force finishing {sum(1 for c in self.contestants if not c.is_finished)} horses.")
            finishes.extend(self.force_finish())
        return TickReport(
            tick=self.tick_index,
            time=self.elapsed,
            kinetic_phase=kinetic_phase_for(progress),
            progress=progress,
            finishes=finishes,
            complete=self.is_complete,
        )

    def run_until(self, target_tick: int) -> List[FinishEvent]:
        """Steps until target_tick (capped at the safety bound) or completion."""
        target = min(int(target_tick), self.max_ticks)
        finishes = []
        while self.tick_index < target and not self.is_complete:
            finishes.extend(self.step().finishes)
        return finishes

    def run_until_finished(self) -> List[FinishEvent]:
        return self.run_until(self.max_ticks)

    def results(self) -> List[FinishRecord]:
        by_id = {c.id: c for c in self.contestants}
        placed = [by_id[cid] for cid in self._finish_order]
        if not placed:
            return []
        leader_time = placed[0].finish_time
        return [
            FinishRecord(
                contestant_id=c.id,
                name=c.name,
                lane=c.lane,
                placement=c.placement,
                finish_time=c.finish_time,
                gap_to_leader=c.finish_time - leader_time,
            )
            for c in placed
        ]

    @property
    def photo_finish(self) -> bool:
        results = self.results()
        if len(results) < 2:
            return False
        return results[1].finish_time - results[0].finish_time < PHOTO_FINISH_GAP
