"""
Utility script to run complete race lifecycles offline.

Drives the real RacePhaseController against the in-memory race row with a
simulated clock, so a full PreRace -> Finished cycle takes a moment instead of
a minute and a half.

Usage:
    python scripts/run_race.py --races 3 --seed 7 --telemetry
    python scripts/run_race.py --book postgres --races 0 --leaderboard 10
    python scripts/run_race.py --book postgres --reset-ratings
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta

# Ensure repo root is on sys.path when script is executed from anywhere
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.append(REPO_ROOT)

import numpy as np  # noqa: E402

from derby_live.automation import IDLE_INTERVAL, RACING_INTERVAL  # noqa: E402
from derby_live.database.memory import InMemoryRaceStore, InMemoryRatingBook  # noqa: E402
from derby_live.engine.data_models import RacePhase, utc_now  # noqa: E402
from derby_live.engine.ratings import RatingEngine, rating_tier  # noqa: E402
from derby_live.engine.telemetry import TelemetryCollector  # noqa: E402
from derby_live.race_controller import RacePhaseController  # noqa: E402
from derby_live.roster import HorseRoster, JsonCatalog  # noqa: E402

# Simulated seconds before giving up on a single race lifecycle.
MAX_SIMULATED_SECONDS = 600


class SimulatedClock:
    def __init__(self, start=None):
        self.now = start or utc_now()

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


def _build_book(kind: str):
    if kind == "postgres":
        from derby_live.database.queries import PostgresRatingBook
        return PostgresRatingBook()
    return InMemoryRatingBook()


def run_lifecycle(controller: RacePhaseController, clock: SimulatedClock, race_id: int):
    """Ticks until race_id has finished. Returns the finished snapshot."""
    elapsed = 0.0
    while elapsed < MAX_SIMULATED_SECONDS:
        result = controller.advance_tick()
        state = controller.store.read()
        if state and state.race_id == race_id and state.phase is RacePhase.FINISHED:
            return state
        step = RACING_INTERVAL if result.phase is RacePhase.RACING else IDLE_INTERVAL
        clock.advance(step)
        elapsed += step
    raise RuntimeError(f"Race #{race_id} did not finish within {MAX_SIMULATED_SECONDS}s of simulated time.")


def print_results(state, telemetry: TelemetryCollector = None):
    print(f"\nRace #{state.race_id} Finish Order{' (PHOTO FINISH)' if state.photo_finish else ''}:")
    for record in state.results:
        change = record.rating_change or 0.0
        print(
            f"{record.placement}. {record.name:<22} lane {record.lane}  "
            f"{record.finish_time:7.3f}s  +{record.gap_to_leader:.3f}  "
            f"{record.rating_before:7.1f} -> {record.rating_after:7.1f} ({change:+.1f})"
        )
    if telemetry is not None:
        print(f"  -> Telemetry: {len(telemetry.frames)} frames, {telemetry.leader_changes()} lead changes, phases {telemetry.phase_ticks()}")


def print_leaderboard(engine: RatingEngine, limit: int):
    print(f"\nTop {limit} horses:")
    for idx, entry in enumerate(engine.leaderboard(limit), start=1):
        form = "-".join(str(p) for p in entry["recent_form"]) or "none"
        print(
            f"{idx}. {entry['name']:<22} {entry['rating']:7.1f} [{entry['tier']}] "
            f"{entry['wins']}/{entry['total_races']} wins, form {form}"
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Run Derby race lifecycles offline.")
    parser.add_argument("--races", type=int, default=1, help="Number of races to run.")
    parser.add_argument("--seed", type=int, default=None, help="Seed for roster and race randomness.")
    parser.add_argument("--book", choices=("memory", "postgres"), default="memory", help="Rating book backend.")
    parser.add_argument("--telemetry", action="store_true", help="Record and summarize per-tick telemetry.")
    parser.add_argument("--leaderboard", type=int, default=0, metavar="N", help="Print the top N horses (after any races).")
    parser.add_argument("--reset-ratings", action="store_true", help="Wipe the rating book and exit.")
    parser.add_argument("--silent", action="store_true", help="Suppress controller output.")
    args = parser.parse_args()

    engine = RatingEngine(_build_book(args.book), verbose=not args.silent)

    if args.reset_ratings:
        response = input("This wipes every horse rating. Continue? (y/n): ")
        if response.lower() == 'y':
            engine.reset_book()
        else:
            print("Rating reset cancelled.")
        return

    if args.leaderboard and args.races <= 0:
        print_leaderboard(engine, args.leaderboard)
        return

    if args.book != "memory":
        # Race ids restart at 1 offline and would collide with settled races.
        print("Warning: offline races always settle into a fresh in-memory book.")
        engine = RatingEngine(InMemoryRatingBook(), verbose=not args.silent)

    clock = SimulatedClock()
    rng = np.random.default_rng(args.seed)
    telemetry = TelemetryCollector() if args.telemetry else None
    controller = RacePhaseController(
        InMemoryRaceStore(clock=clock),
        engine,
        HorseRoster(JsonCatalog(), engine, rng=rng),
        actor_id="offline-runner",
        clock=clock,
        telemetry=telemetry,
        seed_rng=rng,
        verbose=not args.silent,
    )

    for race_id in range(1, args.races + 1):
        if telemetry is not None:
            telemetry.clear()
        state = run_lifecycle(controller, clock, race_id)
        print_results(state, telemetry)
        winner = state.results[0]
        print(f"  -> Winner tier: {rating_tier(winner.rating_after)}")

    if args.leaderboard:
        print_leaderboard(engine, args.leaderboard)


if __name__ == "__main__":
    main()
