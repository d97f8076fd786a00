from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Sequence


@dataclass
class TelemetryRacerFrame:
    contestant_id: str
    name: str
    lane: int
    position: float
    distance_delta: float
    speed: float
    multiplier: float
    surge_multiplier: float
    is_finished: bool


@dataclass
class TelemetryFrame:
    tick: int
    time: float
    kinetic_phase: str
    progress: float
    racers: List[TelemetryRacerFrame] = field(default_factory=list)


class TelemetryCollector:
    def __init__(self) -> None:
        self.frames: List[TelemetryFrame] = []

    def record_frame(self, frame: TelemetryFrame) -> None:
        self.frames.append(frame)

    def export(self) -> Sequence[TelemetryFrame]:
        return tuple(self.frames)

    def clear(self) -> None:
        self.frames.clear()

    def phase_ticks(self) -> Dict[str, int]:
        """Number of recorded ticks spent in each kinetic phase."""
        return dict(Counter(frame.kinetic_phase for frame in self.frames))

    def leader_changes(self) -> int:
        changes = 0
        leader = None
        for frame in self.frames:
            if not frame.racers:
                continue
            current = max(frame.racers, key=lambda r: (r.position, -r.lane)).contestant_id
            if leader is not None and current != leader:
                changes += 1
            leader = current
        return changes
