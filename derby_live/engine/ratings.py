"""
Rating engine: round-robin ELO updates, fair odds, and horse statistics.

The math here is deterministic and side-effect free. The RatingEngine class
at the bottom is the only place that touches the rating book store.
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from derby_live.config import get_config
from derby_live.engine.data_models import FinishRecord, HorseStats

DEFAULT_RATING = get_config('ratings.default_rating', 500)
RATING_FLOOR = get_config('ratings.rating_floor', 100)
PODIUM_K = get_config('ratings.podium_k', 192)
FIELD_K = get_config('ratings.field_k', 32)
PODIUM_PLACES = get_config('ratings.podium_places', 3)
FORM_LENGTH = get_config('ratings.form_length', 5)
NORMALIZE_MIN = get_config('ratings.normalize_min', 400)
NORMALIZE_MAX = get_config('ratings.normalize_max', 2100)

OVERROUND = get_config('odds.overround', 0.02)
MIN_ODDS = get_config('odds.min_odds', 1.01)
MAX_ODDS = get_config('odds.max_odds', 999)
# (threshold, multiplier), checked highest first: rating >= threshold
TIER_MULTIPLIERS = get_config('odds.tier_multipliers', [[2000, 1.4], [1800, 1.3], [1600, 1.2], [1400, 1.1]])
# (threshold, multiplier), checked lowest first: rating < threshold
LOW_MULTIPLIERS = get_config('odds.low_multipliers', [[800, 0.6], [1000, 0.8]])
# (upper bound, step); a null bound catches everything above
ROUNDING_STEPS = get_config('odds.rounding_steps', [[2.0, 0.05], [5.0, 0.1], [20.0, 0.5], [100.0, 1.0], [None, 5.0]])

RATING_TIERS = [
    (2000, "Mythical"),
    (1900, "Legendary"),
    (1800, "Champion"),
    (1700, "Elite"),
    (1600, "Expert"),
    (1500, "Skilled"),
    (1400, "Competent"),
    (1300, "Promising"),
    (1200, "Developing"),
    (1000, "Novice"),
]
BASE_TIER = "Rookie"

# (book key, rating at race start, placement)
RatedFinish = Tuple[str, float, int]


def expected_score(rating_a: float, rating_b: float) -> float:
    """Logistic probability that A beats B."""
    return 1.0 / (1.0 + 10 ** ((rating_b - rating_a) / 400.0))


def k_factor(placement: int) -> float:
    return PODIUM_K if placement <= PODIUM_PLACES else FIELD_K


def normalize_rating(rating: float) -> float:
    """Maps a rating linearly onto [0, 1] across the configured band, clamped."""
    span = NORMALIZE_MAX - NORMALIZE_MIN
    return float(np.clip((rating - NORMALIZE_MIN) / span, 0.0, 1.0))


def rating_tier(rating: float) -> str:
    for threshold, name in RATING_TIERS:
        if rating >= threshold:
            return name
    return BASE_TIER


def update_ratings(finish_order: Sequence[RatedFinish]) -> Dict[str, float]:
    """
    Full round-robin ELO update over every unordered pair of finishers.

    Each contestant accumulates k_i * (actual - expected) against every other
    contestant, where the better placement scores 1. All deltas are computed
    from the start-of-race ratings and applied at once, then floored.
    Podium finishers use the larger K, so top-3 results swing ratings hard
    while the rest of the field drifts.
    """
    if not finish_order:
        return {}

    keys = [entry[0] for entry in finish_order]
    ratings = np.array([float(entry[1]) for entry in finish_order])
    placements = np.array([int(entry[2]) for entry in finish_order])

    # expected[i, j]: probability that i beats j
    expected = 1.0 / (1.0 + 10 ** ((ratings[None, :] - ratings[:, None]) / 400.0))
    actual = np.where(
        placements[:, None] < placements[None, :],
        1.0,
        np.where(placements[:, None] > placements[None, :], 0.0, 0.5),
    )
    np.fill_diagonal(expected, 0.0)
    np.fill_diagonal(actual, 0.0)

    k = np.array([k_factor(p) for p in placements])
    deltas = k * (actual - expected).sum(axis=1)
    updated = np.maximum(ratings + deltas, RATING_FLOOR)

    return {key: float(value) for key, value in zip(keys, updated)}


def _tier_multiplier(rating: float) -> float:
    for threshold, multiplier in TIER_MULTIPLIERS:
        if rating >= threshold:
            return multiplier
    for threshold, multiplier in LOW_MULTIPLIERS:
        if rating < threshold:
            return multiplier
    return 1.0


def win_probabilities(ratings: Sequence[Tuple[str, float]]) -> Dict[str, float]:
    """Tier-adjusted win probabilities for a field, summing to 1."""
    if not ratings:
        return {}
    values = np.array([float(r) for _, r in ratings])
    # Shift by the max before exponentiating; the ratio is unchanged.
    strengths = np.power(10.0, (values - values.max()) / 400.0)
    probs = strengths / strengths.sum()
    probs = probs * np.array([_tier_multiplier(r) for r in values])
    probs = probs / probs.sum()
    return {name: float(p) for (name, _), p in zip(ratings, probs)}


def _round_odds(odds: float) -> float:
    for bound, step in ROUNDING_STEPS:
        if bound is None or odds < bound:
            return round(round(odds / step) * step, 2)
    return round(odds, 2)


def compute_fair_odds(ratings: Sequence[Tuple[str, float]], rounded: bool = True) -> Dict[str, float]:
    """
    Decimal odds for each horse from its rating.

    With rounded=False the raw book odds are returned, whose inverses sum to
    1 / (1 - overround). Rounded odds are clamped to [MIN_ODDS, MAX_ODDS] and
    never decrease as rating decreases (ties keep input order).
    """
    probabilities = win_probabilities(ratings)
    margin = 1.0 - OVERROUND
    raw = {name: margin / p if p > 0 else math.inf for name, p in probabilities.items()}
    if not rounded:
        return raw

    ordered = sorted(range(len(ratings)), key=lambda i: (-float(ratings[i][1]), i))
    odds = {}
    floor_odds = MIN_ODDS
    for idx in ordered:
        name = ratings[idx][0]
        value = _round_odds(min(raw[name], MAX_ODDS))
        value = min(max(value, MIN_ODDS, floor_odds), MAX_ODDS)
        odds[name] = value
        floor_odds = value
    return {name: odds[name] for name, _ in ratings}


def record_stats(
    placements: Iterable[Tuple[str, int]],
    current: Mapping[str, Optional[HorseStats]],
) -> Dict[str, HorseStats]:
    """Returns each horse's stats after adding one race result."""
    updated = {}
    for name, placement in placements:
        previous = current.get(name) or HorseStats()
        form = [int(placement)] + list(previous.recent_form)
        updated[name] = HorseStats(
            wins=previous.wins + (1 if placement == 1 else 0),
            total_races=previous.total_races + 1,
            recent_form=form[:FORM_LENGTH],
        )
    return updated


class RatingEngine:
    """Persistence boundary for the rating book."""

    def __init__(self, book, verbose: bool = True) -> None:
        self.book = book
        self.verbose = verbose

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[RatingEngine] {message}")

    def rating_for(self, name: str) -> float:
        rating = self.book.get(name)
        return float(rating) if rating is not None else float(DEFAULT_RATING)

    def ratings_for(self, names: Sequence[str]) -> Dict[str, float]:
        """Current ratings for a batch of names in one book read, defaulting unseen ones."""
        known = self.book.get_many(names)
        return {name: float(known.get(name, DEFAULT_RATING)) for name in names}

    def update_ratings(self, finish_order: Sequence[RatedFinish]) -> Dict[str, float]:
        new_ratings = update_ratings(finish_order)
        self.book.set_all(new_ratings)
        return new_ratings

    def record_stats(self, placements: Sequence[Tuple[str, int]]) -> Dict[str, HorseStats]:
        current = {name: self.book.get_stats(name) for name, _ in placements}
        updated = record_stats(placements, current)
        for name, stats in updated.items():
            self.book.set_stats(name, stats)
        return updated

    def settle_race(
        self,
        race_id: int,
        results: Sequence[FinishRecord],
        start_ratings: Mapping[str, float],
    ) -> List[FinishRecord]:
        """
        Applies rating and stat updates for a finished race exactly once.

        The book commits ratings, stats and the race marker together; a race
        that was already settled leaves the book untouched. Returns the results
        annotated with before/after ratings either way.
        """
        finish_order = [(r.name, start_ratings[r.name], r.placement) for r in results]
        new_ratings = update_ratings(finish_order)
        placements = [(r.name, r.placement) for r in results]
        current = {name: self.book.get_stats(name) for name, _ in placements}
        new_stats = record_stats(placements, current)

        applied = self.book.apply_race(race_id, new_ratings, new_stats)
        if applied:
            winner = results[0] if results else None
            if winner:
                change = new_ratings[winner.name] - start_ratings[winner.name]
                self._log(f"Race #{race_id} settled. Winner {winner.name} {change:+.1f} -> {new_ratings[winner.name]:.1f}")
        else:
            self._log(f"Race #{race_id} was already settled; skipping rating update.")

        return [
            FinishRecord(
                contestant_id=r.contestant_id,
                name=r.name,
                lane=r.lane,
                placement=r.placement,
                finish_time=r.finish_time,
                gap_to_leader=r.gap_to_leader,
                rating_before=float(start_ratings[r.name]),
                rating_after=new_ratings[r.name],
            )
            for r in results
        ]

    def leaderboard(self, limit: int = 10) -> List[Dict]:
        entries = self.book.leaderboard(limit)
        for entry in entries:
            entry["tier"] = rating_tier(entry["rating"])
        return entries

    def reset_book(self) -> None:
        self.book.reset_all()
        self._log("Rating book reset.")
