"""
In-process stand-ins for the Postgres race row and rating book.

Used by the offline race script and the test suite. Same semantics as
derby_live.database.queries, including conditional writes, owner leases,
and exactly-once race settlement.
"""

from __future__ import annotations

import threading
from copy import deepcopy
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from derby_live.config import get_config
from derby_live.engine.data_models import HorseStats, RacePhase, RaceState, utc_now

OWNER_LEASE_SECONDS = get_config('automation.owner_lease_seconds', 5)


class InMemoryRaceStore:
    def __init__(self, clock: Callable[[], datetime] = utc_now, lease_seconds: float = OWNER_LEASE_SECONDS):
        self.clock = clock
        self.lease_seconds = lease_seconds
        self._lock = threading.Lock()
        self._state: Optional[RaceState] = None
        self._claimed_at: Optional[datetime] = None
        self._subscribers: List[Callable[[RaceState], None]] = []
        self.writes = 0

    def subscribe(self, callback: Callable[[RaceState], None]):
        """Registers a callback that receives a copy of every committed state."""
        self._subscribers.append(callback)

    def read(self) -> Optional[RaceState]:
        with self._lock:
            return deepcopy(self._state)

    def claim_timer(self, actor_id: str) -> bool:
        with self._lock:
            now = self.clock()
            if self._state is None:
                self._state = RaceState(
                    race_id=0,
                    phase=RacePhase.PRE_RACE,
                    contestants=[],
                    phase_started_at=now,
                )
            owner = self._state.timer_owner
            expired = (
                self._claimed_at is not None
                and now - self._claimed_at > timedelta(seconds=self.lease_seconds)
            )
            if owner is None or owner == actor_id or expired:
                self._state.timer_owner = actor_id
                self._claimed_at = now
                return True
            return False

    def release_timer(self, actor_id: str) -> bool:
        with self._lock:
            if self._state is None or self._state.timer_owner != actor_id:
                return False
            self._state.timer_owner = None
            self._claimed_at = None
            return True

    def conditional_write(self, expected_version: int, actor_id: str, state: RaceState) -> bool:
        with self._lock:
            current = self._state
            if current is None or current.version != expected_version or current.timer_owner != actor_id:
                return False
            stored = deepcopy(state)
            stored.version = current.version + 1
            stored.timer_owner = current.timer_owner
            self._state = stored
            self.writes += 1
            state.version, state.timer_owner = stored.version, stored.timer_owner
            snapshot = deepcopy(stored)

        for callback in self._subscribers:
            callback(deepcopy(snapshot))
        return True


class InMemoryRatingBook:
    def __init__(self, ratings: Optional[Mapping[str, float]] = None):
        self._lock = threading.Lock()
        self._ratings: Dict[str, float] = dict(ratings or {})
        self._stats: Dict[str, HorseStats] = {}
        self._settled: Set[int] = set()

    def get(self, name: str) -> Optional[float]:
        with self._lock:
            return self._ratings.get(name)

    def get_many(self, names: Iterable[str]) -> Dict[str, float]:
        with self._lock:
            return {n: self._ratings[n] for n in names if n in self._ratings}

    def set_all(self, ratings: Mapping[str, float]):
        with self._lock:
            self._ratings.update({name: float(r) for name, r in ratings.items()})

    def get_stats(self, name: str) -> Optional[HorseStats]:
        with self._lock:
            stats = self._stats.get(name)
            return deepcopy(stats) if stats else None

    def set_stats(self, name: str, stats: HorseStats):
        with self._lock:
            self._stats[name] = deepcopy(stats)

    def reset_all(self):
        with self._lock:
            self._ratings.clear()
            self._stats.clear()

    def apply_race(self, race_id: int, ratings: Mapping[str, float], stats: Mapping[str, HorseStats]) -> bool:
        with self._lock:
            if race_id in self._settled:
                return False
            self._settled.add(race_id)
            self._ratings.update({name: float(r) for name, r in ratings.items()})
            for name, horse_stats in stats.items():
                self._stats[name] = deepcopy(horse_stats)
            return True

    def is_settled(self, race_id: int) -> bool:
        with self._lock:
            return race_id in self._settled

    def leaderboard(self, limit: int = 10) -> List[Dict]:
        with self._lock:
            names = set(self._ratings) | set(self._stats)
            default = get_config('ratings.default_rating', 500)
            rows = []
            for name in names:
                stats = self._stats.get(name) or HorseStats()
                rows.append({
                    "name": name,
                    "rating": float(self._ratings.get(name, default)),
                    "wins": stats.wins,
                    "total_races": stats.total_races,
                    "recent_form": list(stats.recent_form),
                })
        rows.sort(key=lambda row: (-row["rating"], row["name"]))
        return rows[:limit]
