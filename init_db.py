import os
from derby_live.database.connection import get_db_connection

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'derby_live', 'database', 'schema.sql')

def initialize_database():
    """
    Reads the schema.sql file and executes it to create the database tables.
    This is a RESET script: it will DROP the 'derby' schema if it exists
    and create it fresh, wiping the race row and the rating book.
    """
    try:
        with open(SCHEMA_PATH, 'r') as f:
            sql_commands = f.read()
    except FileNotFoundError:
        print(f"Error: schema.sql not found at {SCHEMA_PATH}")
        return

    conn = None
    try:
        conn = get_db_connection()

        # DROP SCHEMA can't run inside a transaction block.
        conn.autocommit = True
        with conn.cursor() as cur:
            print("Dropping existing 'derby' schema (if it exists)...")
            cur.execute("DROP SCHEMA IF EXISTS derby CASCADE;")
            print("'derby' schema dropped.")

        conn.autocommit = False

        with conn.cursor() as cur:
            print("Creating new 'derby' schema and tables...")
            cur.execute(sql_commands)
            print("Database tables created successfully!")

        conn.commit()
        print("All changes committed to the database.")

    except Exception as e:
        if conn:
            conn.rollback()
            print("An error occurred. Transaction rolled back.")
        print(f"Error details: {e}")
    finally:
        if conn:
            conn.close()
            print("Database connection closed.")

if __name__ == '__main__':
    print("This script will RESET your 'derby' database schema.")
    print("WARNING: The live race and every horse rating will be WIPED.")
    response = input("Are you sure you want to continue? (y/n): ")

    if response.lower() == 'y':
        initialize_database()
    else:
        print("Database initialization cancelled.")
