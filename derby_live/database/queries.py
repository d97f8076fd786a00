from derby_live.database.connection import get_db_connection
from derby_live.config import get_config
from derby_live.engine.data_models import HorseStats, RaceState
from derby_live.errors import TransientStoreError
from typing import Optional, Dict, Any, Iterable, List, Mapping
import json
import psycopg2
import psycopg2.extras as pg_extras

NOTIFY_CHANNEL = "race_state_changes"
OWNER_LEASE_SECONDS = get_config('automation.owner_lease_seconds', 5)
RACE_STATE_COLUMNS = (
    "race_id", "phase", "contestants", "pre_race_timer", "countdown_timer",
    "race_timer", "results", "phase_started_at", "sim_tick", "seed",
    "photo_finish", "timer_owner", "version",
)

def _row_to_state(row) -> RaceState:
    return RaceState.from_dict(dict(zip(RACE_STATE_COLUMNS, row)))

# --- Race State Queries ---

def read_race_state() -> Optional[RaceState]:
    """
    Fetches the authoritative race row.

    Returns:
        RaceState, or None when the row has never been created.
    """
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {', '.join(RACE_STATE_COLUMNS)} FROM race_state WHERE id = 1;"
            )
            row = cur.fetchone()
        if row is None:
            return None
        return _row_to_state(row)
    except psycopg2.Error as e:
        print(f"Error in read_race_state: {e}")
        raise TransientStoreError(f"Could not read race state: {e}") from e
    finally:
        conn.close()

def claim_timer(actor_id: str, lease_seconds: float = OWNER_LEASE_SECONDS) -> bool:
    """
    Claims timer ownership in one conditional upsert.

    Succeeds when nobody owns the timer, the actor already owns it, or the
    current owner's lease has lapsed. Creates an empty race row on first use.
    """
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO race_state (id, timer_owner, owner_claimed_at)
                VALUES (1, %s, NOW())
                ON CONFLICT (id) DO UPDATE
                SET timer_owner = EXCLUDED.timer_owner,
                    owner_claimed_at = NOW()
                WHERE race_state.timer_owner IS NULL
                   OR race_state.timer_owner = EXCLUDED.timer_owner
                   OR race_state.owner_claimed_at < NOW() - make_interval(secs => %s)
                RETURNING timer_owner;
                """,
                (actor_id, lease_seconds)
            )
            granted = cur.fetchone() is not None
        conn.commit()
        return granted
    except psycopg2.Error as e:
        conn.rollback()
        print(f"Error claiming race timer for {actor_id}: {e}")
        raise TransientStoreError(f"Could not claim race timer: {e}") from e
    finally:
        conn.close()

def release_timer(actor_id: str) -> bool:
    """
    Clears timer ownership only if actor_id still holds it.
    """
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE race_state
                SET timer_owner = NULL, owner_claimed_at = NULL
                WHERE id = 1 AND timer_owner = %s
                RETURNING id;
                """,
                (actor_id,)
            )
            released = cur.fetchone() is not None
        conn.commit()
        return released
    except psycopg2.Error as e:
        conn.rollback()
        print(f"Error releasing race timer for {actor_id}: {e}")
        raise TransientStoreError(f"Could not release race timer: {e}") from e
    finally:
        conn.close()

def conditional_write_race_state(expected_version: int, actor_id: str, state: RaceState) -> bool:
    """
    Writes the race row if it is still at expected_version and actor_id
    still owns the timer, then notifies listeners with the full state.

    On success the state's version and owner are updated in place.
    Returns False on a version or ownership conflict.
    """
    payload = state.payload()
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE race_state
                SET race_id = %s,
                    phase = %s,
                    contestants = %s,
                    pre_race_timer = %s,
                    countdown_timer = %s,
                    race_timer = %s,
                    results = %s,
                    phase_started_at = %s,
                    sim_tick = %s,
                    seed = %s,
                    photo_finish = %s,
                    version = version + 1,
                    updated_at = NOW()
                WHERE id = 1 AND version = %s AND timer_owner = %s
                RETURNING version, timer_owner;
                """,
                (
                    payload["race_id"],
                    payload["phase"],
                    pg_extras.Json(payload["contestants"]),
                    payload["pre_race_timer"],
                    payload["countdown_timer"],
                    payload["race_timer"],
                    pg_extras.Json(payload["results"]),
                    state.phase_started_at,
                    payload["sim_tick"],
                    payload["seed"],
                    payload["photo_finish"],
                    expected_version,
                    actor_id,
                )
            )
            row = cur.fetchone()
            if row is None:
                conn.rollback()
                return False

            state.version, state.timer_owner = row[0], row[1]
            cur.execute(
                "SELECT pg_notify(%s, %s);",
                (NOTIFY_CHANNEL, json.dumps(state.to_dict()))
            )
        conn.commit()
        return True
    except psycopg2.Error as e:
        conn.rollback()
        print(f"Error writing race state (expected version {expected_version}): {e}")
        raise TransientStoreError(f"Could not write race state: {e}") from e
    finally:
        conn.close()

# --- Rating Book Queries ---

def _upsert_ratings(cur, ratings: Mapping[str, float]):
    if not ratings:
        return
    pg_extras.execute_values(
        cur,
        """
        INSERT INTO horses (name, rating) VALUES %s
        ON CONFLICT (name) DO UPDATE
        SET rating = EXCLUDED.rating, updated_at = NOW();
        """,
        [(name, float(rating)) for name, rating in ratings.items()]
    )

def _upsert_stats(cur, name: str, stats: HorseStats):
    cur.execute(
        """
        INSERT INTO horses (name, wins, total_races, recent_form)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (name) DO UPDATE
        SET wins = EXCLUDED.wins,
            total_races = EXCLUDED.total_races,
            recent_form = EXCLUDED.recent_form,
            updated_at = NOW();
        """,
        (name, stats.wins, stats.total_races, list(stats.recent_form))
    )

def get_horse_rating(name: str) -> Optional[float]:
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT rating FROM horses WHERE name = %s;", (name,))
            row = cur.fetchone()
        return float(row[0]) if row else None
    except psycopg2.Error as e:
        print(f"Error in get_horse_rating for {name}: {e}")
        raise TransientStoreError(f"Could not read rating for {name}: {e}") from e
    finally:
        conn.close()

def get_horse_ratings(names: Iterable[str]) -> Dict[str, float]:
    """Ratings for every name already in the book; unseen names are omitted."""
    names = list(names)
    if not names:
        return {}
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT name, rating FROM horses WHERE name = ANY(%s);", (names,))
            return {row[0]: float(row[1]) for row in cur.fetchall()}
    except psycopg2.Error as e:
        print(f"Error in get_horse_ratings: {e}")
        raise TransientStoreError(f"Could not read ratings: {e}") from e
    finally:
        conn.close()

def get_horse_stats(name: str) -> Optional[HorseStats]:
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT wins, total_races, recent_form FROM horses WHERE name = %s;",
                (name,)
            )
            row = cur.fetchone()
        if row is None:
            return None
        return HorseStats(wins=row[0], total_races=row[1], recent_form=list(row[2] or []))
    except psycopg2.Error as e:
        print(f"Error in get_horse_stats for {name}: {e}")
        raise TransientStoreError(f"Could not read stats for {name}: {e}") from e
    finally:
        conn.close()

def set_horse_ratings(ratings: Mapping[str, float]):
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            _upsert_ratings(cur, ratings)
        conn.commit()
    except psycopg2.Error as e:
        conn.rollback()
        print(f"Error in set_horse_ratings: {e}")
        raise TransientStoreError(f"Could not write ratings: {e}") from e
    finally:
        conn.close()

def set_horse_stats(name: str, stats: HorseStats):
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            _upsert_stats(cur, name, stats)
        conn.commit()
    except psycopg2.Error as e:
        conn.rollback()
        print(f"Error in set_horse_stats for {name}: {e}")
        raise TransientStoreError(f"Could not write stats for {name}: {e}") from e
    finally:
        conn.close()

def reset_rating_book():
    """
    Wipes every rating and stat in one transaction. Settled race markers
    are kept so an old race can never be re-applied.
    """
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM horses;")
            print(f"  -> Cleared {cur.rowcount} horses from the rating book.")
        conn.commit()
    except psycopg2.Error as e:
        conn.rollback()
        print(f"Error resetting rating book: {e}")
        raise TransientStoreError(f"Could not reset rating book: {e}") from e
    finally:
        conn.close()

def apply_race_settlement(race_id: int, ratings: Mapping[str, float], stats: Mapping[str, HorseStats]) -> bool:
    """
    Commits a race's rating and stat updates together with its settled marker.

    Returns:
        bool: False if the race was already settled (nothing written).
    """
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "INSERT INTO rated_races (race_id) VALUES (%s) ON CONFLICT (race_id) DO NOTHING;",
                (race_id,)
            )
            if cur.rowcount == 0:
                conn.rollback()
                return False
            _upsert_ratings(cur, ratings)
            for name, horse_stats in stats.items():
                _upsert_stats(cur, name, horse_stats)
        conn.commit()
        return True
    except psycopg2.Error as e:
        conn.rollback()
        print(f"Error settling ratings for race {race_id}: {e}")
        raise TransientStoreError(f"Could not settle race {race_id}: {e}") from e
    finally:
        conn.close()

def get_leaderboard(limit: int = 10) -> List[Dict[str, Any]]:
    conn = get_db_connection()
    board = []
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT name, rating, wins, total_races, recent_form
                FROM horses
                ORDER BY rating DESC, name
                LIMIT %s;
                """,
                (limit,)
            )
            for row in cur.fetchall():
                board.append({
                    "name": row[0],
                    "rating": float(row[1]),
                    "wins": row[2],
                    "total_races": row[3],
                    "recent_form": list(row[4] or []),
                })
        return board
    except psycopg2.Error as e:
        print(f"Error fetching leaderboard: {e}")
        raise TransientStoreError(f"Could not read leaderboard: {e}") from e
    finally:
        conn.close()


class PostgresRaceStore:
    """Race row store backed by derby.race_state."""

    def __init__(self, lease_seconds: float = OWNER_LEASE_SECONDS):
        self.lease_seconds = lease_seconds

    def read(self) -> Optional[RaceState]:
        return read_race_state()

    def claim_timer(self, actor_id: str) -> bool:
        return claim_timer(actor_id, self.lease_seconds)

    def release_timer(self, actor_id: str) -> bool:
        return release_timer(actor_id)

    def conditional_write(self, expected_version: int, actor_id: str, state: RaceState) -> bool:
        return conditional_write_race_state(expected_version, actor_id, state)


class PostgresRatingBook:
    """Rating book backed by derby.horses and derby.rated_races."""

    def get(self, name: str) -> Optional[float]:
        return get_horse_rating(name)

    def get_many(self, names: Iterable[str]) -> Dict[str, float]:
        return get_horse_ratings(names)

    def set_all(self, ratings: Mapping[str, float]):
        set_horse_ratings(ratings)

    def get_stats(self, name: str) -> Optional[HorseStats]:
        return get_horse_stats(name)

    def set_stats(self, name: str, stats: HorseStats):
        set_horse_stats(name, stats)

    def reset_all(self):
        reset_rating_book()

    def apply_race(self, race_id: int, ratings: Mapping[str, float], stats: Mapping[str, HorseStats]) -> bool:
        return apply_race_settlement(race_id, ratings, stats)

    def leaderboard(self, limit: int = 10) -> List[Dict[str, Any]]:
        return get_leaderboard(limit)
