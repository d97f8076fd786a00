import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2

from derby_live.database import connection, queries
from derby_live.engine.data_models import HorseStats, RacePhase, RaceState
from derby_live.errors import TransientStoreError


def _fake_connection():
    fake_cursor = MagicMock()
    fake_cursor.__enter__.return_value = fake_cursor
    fake_conn = MagicMock()
    fake_conn.cursor.return_value = fake_cursor
    return fake_conn, fake_cursor


def _state(version=3):
    return RaceState(
        race_id=4,
        phase=RacePhase.COUNTDOWN,
        contestants=[],
        phase_started_at=datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc),
        countdown_timer=2.5,
        timer_owner="server-a",
        version=version,
    )


class RaceStateQueryTests(unittest.TestCase):
    def test_read_maps_row_to_state(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.fetchone.return_value = (
            7, "racing", [], 0.0, 0.0, 12.3, [],
            datetime(2025, 6, 1, 12, 0, 0), 123, 99, False, "server-a", 41,
        )

        with patch.object(queries, "get_db_connection", return_value=fake_conn):
            state = queries.read_race_state()

        self.assertEqual(state.race_id, 7)
        self.assertIs(state.phase, RacePhase.RACING)
        self.assertEqual(state.sim_tick, 123)
        self.assertEqual(state.version, 41)
        self.assertEqual(state.phase_started_at.tzinfo, timezone.utc)
        fake_conn.close.assert_called_once()

    def test_read_returns_none_without_row(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.fetchone.return_value = None

        with patch.object(queries, "get_db_connection", return_value=fake_conn):
            self.assertIsNone(queries.read_race_state())

    def test_claim_is_a_single_conditional_upsert(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.fetchone.return_value = ("server-a",)

        with patch.object(queries, "get_db_connection", return_value=fake_conn):
            self.assertTrue(queries.claim_timer("server-a", 5))

        fake_cursor.execute.assert_called_once()
        sql, params = fake_cursor.execute.call_args[0]
        self.assertIn("ON CONFLICT (id) DO UPDATE", sql)
        self.assertIn("timer_owner IS NULL", sql)
        self.assertEqual(params, ("server-a", 5))
        fake_conn.commit.assert_called_once()

    def test_claim_denied_when_no_row_returned(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.fetchone.return_value = None

        with patch.object(queries, "get_db_connection", return_value=fake_conn):
            self.assertFalse(queries.claim_timer("server-b"))

    def test_conditional_write_bumps_version_and_notifies(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.fetchone.return_value = (4, "server-a")
        state = _state()

        with patch.object(queries, "get_db_connection", return_value=fake_conn):
            self.assertTrue(queries.conditional_write_race_state(3, "server-a", state))

        self.assertEqual(state.version, 4)
        update_sql, update_params = fake_cursor.execute.call_args_list[0][0]
        self.assertIn("WHERE id = 1 AND version = %s AND timer_owner = %s", update_sql)
        self.assertEqual(update_params[-2:], (3, "server-a"))
        notify_sql, notify_params = fake_cursor.execute.call_args_list[1][0]
        self.assertIn("pg_notify", notify_sql)
        self.assertEqual(notify_params[0], "race_state_changes")
        self.assertIn('"version": 4', notify_params[1])
        fake_conn.commit.assert_called_once()

    def test_conditional_write_conflict_rolls_back(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.fetchone.return_value = None
        state = _state()

        with patch.object(queries, "get_db_connection", return_value=fake_conn):
            self.assertFalse(queries.conditional_write_race_state(3, "server-a", state))

        self.assertEqual(state.version, 3)
        self.assertEqual(fake_cursor.execute.call_count, 1)
        fake_conn.rollback.assert_called_once()
        fake_conn.commit.assert_not_called()

    def test_database_errors_become_transient(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

        with patch.object(queries, "get_db_connection", return_value=fake_conn):
            with self.assertRaises(TransientStoreError):
                queries.conditional_write_race_state(3, "server-a", _state())

        fake_conn.rollback.assert_called_once()
        fake_conn.close.assert_called_once()

    def test_unreachable_server_aborts_the_read(self):
        with patch.object(queries, "get_db_connection", side_effect=TransientStoreError("Database unavailable")):
            with self.assertRaises(TransientStoreError):
                queries.read_race_state()


class RatingBookQueryTests(unittest.TestCase):
    def test_apply_race_skips_settled_race(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.rowcount = 0

        with patch.object(queries, "get_db_connection", return_value=fake_conn), \
                patch.object(queries.pg_extras, "execute_values") as execute_values:
            applied = queries.apply_race_settlement(9, {"Dasher": 612.0}, {"Dasher": HorseStats(1, 1, [1])})

        self.assertFalse(applied)
        execute_values.assert_not_called()
        fake_conn.rollback.assert_called_once()
        fake_conn.commit.assert_not_called()

    def test_apply_race_writes_everything_in_one_transaction(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.rowcount = 1
        stats = {"Dasher": HorseStats(1, 1, [1]), "Comet": HorseStats(0, 1, [2])}

        with patch.object(queries, "get_db_connection", return_value=fake_conn), \
                patch.object(queries.pg_extras, "execute_values") as execute_values:
            applied = queries.apply_race_settlement(9, {"Dasher": 612.0, "Comet": 388.0}, stats)

        self.assertTrue(applied)
        execute_values.assert_called_once()
        rows = execute_values.call_args[0][2]
        self.assertEqual(sorted(rows), [("Comet", 388.0), ("Dasher", 612.0)])
        # marker insert + one stats upsert per horse
        self.assertEqual(fake_cursor.execute.call_count, 3)
        self.assertIn("rated_races", fake_cursor.execute.call_args_list[0][0][0])
        fake_conn.commit.assert_called_once()
        fake_conn.close.assert_called_once()

    def test_leaderboard_rows(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.fetchall.return_value = [
            ("Dasher", 1812.5, 4, 9, [1, 3, 1]),
            ("Comet", 640.0, 0, 2, None),
        ]

        with patch.object(queries, "get_db_connection", return_value=fake_conn):
            board = queries.get_leaderboard(2)

        self.assertEqual(board[0]["name"], "Dasher")
        self.assertEqual(board[0]["recent_form"], [1, 3, 1])
        self.assertEqual(board[1]["recent_form"], [])
        fake_conn.close.assert_called_once()

    def test_get_many_skips_query_for_empty_input(self):
        with patch.object(queries, "get_db_connection") as get_conn:
            self.assertEqual(queries.get_horse_ratings([]), {})
        get_conn.assert_not_called()

    def test_stats_round_trip_from_row(self):
        fake_conn, fake_cursor = _fake_connection()
        fake_cursor.fetchone.return_value = (2, 5, [4, 1, 2])

        with patch.object(queries, "get_db_connection", return_value=fake_conn):
            stats = queries.get_horse_stats("Dasher")

        self.assertEqual(stats, HorseStats(wins=2, total_races=5, recent_form=[4, 1, 2]))


class ConnectionTests(unittest.TestCase):
    def test_connect_failure_raises_transient(self):
        with patch.object(connection.psycopg2, "connect",
                          side_effect=psycopg2.OperationalError("could not connect to server")):
            with self.assertRaises(TransientStoreError):
                connection.get_db_connection()

    def test_sessions_use_derby_schema_and_utc(self):
        fake_conn = MagicMock()
        with patch.object(connection.psycopg2, "connect", return_value=fake_conn) as connect:
            self.assertIs(connection.get_db_connection(), fake_conn)
        options = connect.call_args.kwargs["options"]
        self.assertIn("search_path=derby", options)
        self.assertIn("timezone=UTC", options)


if __name__ == "__main__":
    unittest.main()
