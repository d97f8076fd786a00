import os
import psycopg2
from dotenv import load_dotenv

from derby_live.errors import TransientStoreError

# DB_* settings may come from a .env file beside the repo
load_dotenv()

# Every race server session sees the derby schema first and talks UTC,
# so phase_started_at arithmetic matches the Python clock.
SESSION_OPTIONS = "-c search_path=derby,public -c timezone=UTC"


def connection_settings():
    return {
        "dbname": os.getenv('DB_NAME'),
        "user": os.getenv('DB_USER'),
        "password": os.getenv('DB_PASSWORD'),
        "host": os.getenv('DB_HOST'),
        "port": os.getenv('DB_PORT', 5432),
    }


def get_db_connection():
    """
    Opens a fresh connection for one race row or rating book operation.

    Raises:
        TransientStoreError: the server is unreachable or refused the login.
            The tick that asked for it is abandoned and retried next tick.
    """
    settings = connection_settings()
    try:
        return psycopg2.connect(options=SESSION_OPTIONS, **settings)
    except psycopg2.Error as e:
        print(f"Error: Could not connect to {settings['host']}/{settings['dbname']}: {e}")
        raise TransientStoreError(f"Database unavailable: {e}") from e
