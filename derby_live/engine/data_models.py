from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class RacePhase(Enum):
    """Race lifecycle phases, stored with the legacy row identifiers."""

    PRE_RACE = "pre-race"
    COUNTDOWN = "countdown"
    RACING = "racing"
    FINISHED = "finished"

    @classmethod
    def from_str(cls, value: str) -> "RacePhase":
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown race phase: {value}") from exc

    @property
    def next_phase(self) -> "RacePhase":
        order = list(RacePhase)
        return order[(order.index(self) + 1) % len(order)]


class KineticPhase(Enum):
    """Motion model regime keyed on overall race progress, not on lifecycle phase."""

    PACK = "pack"
    TRANSITION = "transition"
    SPRINT = "sprint"


@dataclass
class Contestant:
    id: str
    name: str
    rating: float
    lane: int
    position: float = 0.0
    odds: float = 0.0
    speed: float = 0.0
    finish_time: Optional[float] = None
    placement: Optional[int] = None
    surge_multiplier: float = 1.0
    surge_ticks_remaining: int = 0

    @property
    def is_finished(self) -> bool:
        return self.placement is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "rating": self.rating,
            "lane": self.lane,
            "position": self.position,
            "odds": self.odds,
            "speed": self.speed,
            "finish_time": self.finish_time,
            "placement": self.placement,
            "surge_multiplier": self.surge_multiplier,
            "surge_ticks_remaining": self.surge_ticks_remaining,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Contestant":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            rating=float(data["rating"]),
            lane=int(data["lane"]),
            position=float(data.get("position") or 0.0),
            odds=float(data.get("odds") or 0.0),
            speed=float(data.get("speed") or 0.0),
            finish_time=data.get("finish_time"),
            placement=data.get("placement"),
            surge_multiplier=float(data.get("surge_multiplier", 1.0)),
            surge_ticks_remaining=int(data.get("surge_ticks_remaining", 0)),
        )


@dataclass(frozen=True)
class FinishRecord:
    contestant_id: str
    name: str
    lane: int
    placement: int
    finish_time: float
    gap_to_leader: float
    rating_before: Optional[float] = None
    rating_after: Optional[float] = None

    @property
    def rating_change(self) -> Optional[float]:
        if self.rating_before is None or self.rating_after is None:
            return None
        return self.rating_after - self.rating_before

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contestant_id": self.contestant_id,
            "name": self.name,
            "lane": self.lane,
            "placement": self.placement,
            "finish_time": self.finish_time,
            "gap_to_leader": self.gap_to_leader,
            "rating_before": self.rating_before,
            "rating_after": self.rating_after,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FinishRecord":
        return cls(
            contestant_id=str(data["contestant_id"]),
            name=data["name"],
            lane=int(data["lane"]),
            placement=int(data["placement"]),
            finish_time=float(data["finish_time"]),
            gap_to_leader=float(data["gap_to_leader"]),
            rating_before=data.get("rating_before"),
            rating_after=data.get("rating_after"),
        )


@dataclass
class HorseStats:
    wins: int = 0
    total_races: int = 0
    recent_form: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wins": self.wins,
            "total_races": self.total_races,
            "recent_form": list(self.recent_form),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HorseStats":
        return cls(
            wins=int(data.get("wins") or 0),
            total_races=int(data.get("total_races") or 0),
            recent_form=[int(p) for p in (data.get("recent_form") or [])],
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None or parsed.tzinfo.utcoffset(parsed) is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class RaceState:
    """The single authoritative race row."""

    race_id: int
    phase: RacePhase
    contestants: List[Contestant]
    phase_started_at: datetime
    pre_race_timer: float = 0.0
    countdown_timer: float = 0.0
    race_timer: float = 0.0
    results: List[FinishRecord] = field(default_factory=list)
    timer_owner: Optional[str] = None
    version: int = 0
    sim_tick: int = 0
    seed: int = 0
    photo_finish: bool = False

    def copy(self) -> "RaceState":
        return deepcopy(self)

    def contestant(self, contestant_id: str) -> Optional[Contestant]:
        for contestant in self.contestants:
            if contestant.id == contestant_id:
                return contestant
        return None

    def payload(self) -> Dict[str, Any]:
        """Race content without the coordination columns (version, owner)."""
        return {
            "race_id": self.race_id,
            "phase": self.phase.value,
            "contestants": [c.to_dict() for c in self.contestants],
            "pre_race_timer": self.pre_race_timer,
            "countdown_timer": self.countdown_timer,
            "race_timer": self.race_timer,
            "results": [r.to_dict() for r in self.results],
            "phase_started_at": self.phase_started_at.isoformat(),
            "sim_tick": self.sim_tick,
            "seed": self.seed,
            "photo_finish": self.photo_finish,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.payload()
        data["timer_owner"] = self.timer_owner
        data["version"] = self.version
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RaceState":
        return cls(
            race_id=int(data["race_id"]),
            phase=RacePhase.from_str(data["phase"]),
            contestants=[Contestant.from_dict(c) for c in data.get("contestants") or []],
            phase_started_at=_parse_timestamp(data["phase_started_at"]),
            pre_race_timer=float(data.get("pre_race_timer") or 0.0),
            countdown_timer=float(data.get("countdown_timer") or 0.0),
            race_timer=float(data.get("race_timer") or 0.0),
            results=[FinishRecord.from_dict(r) for r in data.get("results") or []],
            timer_owner=data.get("timer_owner"),
            version=int(data.get("version") or 0),
            sim_tick=int(data.get("sim_tick") or 0),
            seed=int(data.get("seed") or 0),
            photo_finish=bool(data.get("photo_finish", False)),
        )
