from collections import Counter

import numpy as np
import pytest

from derby_live.database.memory import InMemoryRatingBook
from derby_live.engine.ratings import RatingEngine
from derby_live.errors import InsufficientCatalog
from derby_live.roster import HorseRoster, JsonCatalog, StaticCatalog, selection_weight

NAMES = [f"Runner {i:02d}" for i in range(12)]


def _roster(names=NAMES, ratings=None, seed=1):
    engine = RatingEngine(InMemoryRatingBook(ratings), verbose=False)
    return HorseRoster(StaticCatalog(names), engine, rng=np.random.default_rng(seed))


def test_assemble_race_builds_a_full_field():
    field = _roster().assemble_race(8)

    assert len(field) == 8
    assert [c.lane for c in field] == list(range(1, 9))
    assert len({c.name for c in field}) == 8
    assert len({c.id for c in field}) == 8
    assert all(c.name in NAMES for c in field)
    assert all(c.rating == 500.0 for c in field)
    assert all(c.position == 0.0 and c.placement is None for c in field)
    assert len({c.odds for c in field}) == 1


def test_assemble_race_uses_book_ratings_for_odds():
    ratings = {name: 500.0 + 150 * idx for idx, name in enumerate(NAMES[:8])}
    field = _roster(NAMES[:8], ratings).assemble_race(8)

    by_rating = sorted(field, key=lambda c: -c.rating)
    assert [c.rating for c in field] == [ratings[c.name] for c in field]
    assert [c.odds for c in by_rating] == sorted(c.odds for c in by_rating)


def test_same_seed_same_field():
    first = [c.name for c in _roster(seed=99).assemble_race(8)]
    second = [c.name for c in _roster(seed=99).assemble_race(8)]
    assert first == second


def test_insufficient_catalog():
    with pytest.raises(InsufficientCatalog) as excinfo:
        _roster(NAMES[:5]).assemble_race(8)
    assert excinfo.value.available == 5
    assert excinfo.value.required == 8


def test_duplicate_names_do_not_count_twice():
    with pytest.raises(InsufficientCatalog):
        _roster(["Echo"] * 10 + ["Foxtrot"]).assemble_race(8)


def test_selection_weights_by_tier():
    assert selection_weight(2000) == 0.25
    assert selection_weight(1650) == 0.5
    assert selection_weight(1400) == 0.75
    assert selection_weight(500) == 1.0


def test_champions_are_picked_less_often():
    names = NAMES[:10]
    ratings = {names[0]: 2000.0, names[1]: 2000.0}
    roster = _roster(names, ratings, seed=2024)

    picks = Counter()
    for _ in range(300):
        picks.update(c.name for c in roster.assemble_race(8))

    champion_rate = (picks[names[0]] + picks[names[1]]) / 600
    rookie_rate = sum(picks[n] for n in names[2:]) / 2400
    assert champion_rate < rookie_rate


def test_json_catalog_reads_shipped_names():
    names = JsonCatalog().list_names()
    assert len(names) >= 8
    assert all(name == name.strip() and name for name in names)


def test_json_catalog_missing_file(tmp_path, capsys):
    catalog = JsonCatalog(str(tmp_path / "missing.json"))
    assert catalog.list_names() == set()
    assert "Horse catalog not found" in capsys.readouterr().out
