import argparse
import asyncio

from derby_live.automation import AutomationSupervisor
from derby_live.database.queries import NOTIFY_CHANNEL, PostgresRaceStore, PostgresRatingBook
from derby_live.engine.ratings import RatingEngine
from derby_live.race_controller import RacePhaseController
from derby_live.roster import HorseRoster, JsonCatalog


def build_controller(actor_id=None):
    rating_engine = RatingEngine(PostgresRatingBook())
    roster = HorseRoster(JsonCatalog(), rating_engine)
    return RacePhaseController(PostgresRaceStore(), rating_engine, roster, actor_id=actor_id)


def main():
    parser = argparse.ArgumentParser(description="Run the authoritative race server tick loop.")
    parser.add_argument("--actor-id", help="Timer owner id for this process (default: host:pid:random).")
    args = parser.parse_args()

    controller = build_controller(args.actor_id)
    supervisor = AutomationSupervisor(controller)
    print(f"--- Race Server Started ({controller.actor_id}) ---")
    print(f"  -> Viewers: LISTEN {NOTIFY_CHANNEL};")
    try:
        asyncio.run(supervisor.run_forever())
    except KeyboardInterrupt:
        print("Race server stopped by user.")


if __name__ == "__main__":
    main()
