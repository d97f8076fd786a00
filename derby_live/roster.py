from __future__ import annotations

import json
import uuid
from typing import Iterable, List, Optional, Set

import numpy as np

from derby_live.config import get_config, resolve_path
from derby_live.engine.data_models import Contestant
from derby_live.engine.ratings import RatingEngine, compute_fair_odds
from derby_live.errors import InsufficientCatalog

POOL_SIZE = get_config('race.pool_size', 8)
CATALOG_PATH = get_config('roster.catalog_path', 'configs/horse_catalog.json')
# (threshold, weight), checked highest first: rating >= threshold
TIER_WEIGHTS = get_config('roster.tier_weights', [[1800, 0.25], [1600, 0.5], [1400, 0.75]])
BASE_WEIGHT = get_config('roster.base_weight', 1.0)


class JsonCatalog:
    """Horse names read from a JSON file with a top-level "names" list."""

    def __init__(self, path: str = CATALOG_PATH):
        self.path = resolve_path(path)

    def list_names(self) -> Set[str]:
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            print(f"Warning: Horse catalog not found at {self.path}")
            return set()
        names = data.get("names", []) if isinstance(data, dict) else data
        return {str(n).strip() for n in names if str(n).strip()}


class StaticCatalog:
    def __init__(self, names: Iterable[str]):
        self._names = {n for n in names if n}

    def list_names(self) -> Set[str]:
        return set(self._names)


def selection_weight(rating: float) -> float:
    for threshold, weight in TIER_WEIGHTS:
        if rating >= threshold:
            return float(weight)
    return float(BASE_WEIGHT)


class HorseRoster:
    """Builds a race field from the catalog and the rating book."""

    def __init__(self, catalog, ratings: RatingEngine, rng: Optional[np.random.Generator] = None):
        self.catalog = catalog
        self.ratings = ratings
        self.rng = rng if rng is not None else np.random.default_rng()

    def assemble_race(self, pool_size: int = POOL_SIZE) -> List[Contestant]:
        """
        Picks pool_size unique horses, weighting strong horses down so the
        same champions don't headline every race, and prices the field.

        Raises:
            InsufficientCatalog: fewer unique names than pool_size.
        """
        names = sorted(self.catalog.list_names())
        if len(names) < pool_size:
            raise InsufficientCatalog(len(names), pool_size)

        book_ratings = self.ratings.ratings_for(names)
        catalog_ratings = np.array([book_ratings[n] for n in names])
        weights = np.array([selection_weight(r) for r in catalog_ratings])
        chosen = self.rng.choice(len(names), size=pool_size, replace=False, p=weights / weights.sum())

        field = [(names[i], float(catalog_ratings[i])) for i in chosen]
        odds = compute_fair_odds(field)

        return [
            Contestant(
                id=uuid.uuid4().hex,
                name=name,
                rating=rating,
                lane=lane,
                odds=odds[name],
            )
            for lane, (name, rating) in enumerate(field, start=1)
        ]
