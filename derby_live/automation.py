import asyncio
from typing import Optional

from derby_live.config import get_config
from derby_live.engine.data_models import RacePhase
from derby_live.errors import InsufficientCatalog
from derby_live.race_controller import RacePhaseController, TickResult

RACING_INTERVAL = get_config('automation.racing_interval', 0.1)
IDLE_INTERVAL = get_config('automation.idle_interval', 1.0)


class AutomationSupervisor:
    """
    Owns the single tick loop for a controller.

    start() schedules the loop on the running event loop. stop() asks the loop
    to finish, waits for any tick still running in its worker thread, and only
    then gives the race timer back. Restarting is always safe because every
    timer is derived from the race row, not from this loop.
    """

    def __init__(self, controller: RacePhaseController, racing_interval: float = RACING_INTERVAL, idle_interval: float = IDLE_INTERVAL):
        self.controller = controller
        self.racing_interval = racing_interval
        self.idle_interval = idle_interval
        self.task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.last_result: Optional[TickResult] = None
        self._stopping: Optional[asyncio.Event] = None
        self._in_flight: Optional[asyncio.Future] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def interval_for(self, result: Optional[TickResult]) -> float:
        if result is not None and result.phase is RacePhase.RACING:
            return self.racing_interval
        return self.idle_interval

    async def tick_once(self) -> Optional[TickResult]:
        """Runs one blocking tick off the event loop. Never raises."""
        # shielded so a cancelled caller leaves the worker thread tracked
        self._in_flight = asyncio.ensure_future(asyncio.to_thread(self.controller.advance_tick))
        try:
            result = await asyncio.shield(self._in_flight)
        except InsufficientCatalog as e:
            print(f"!!! [Automation] Cannot assemble a race: {e}. Retrying.")
            result = None
        except Exception as e:
            print(f"!!! [Automation] Tick failed: {e}")
            result = None
        self.ticks += 1
        self.last_result = result
        return result

    async def _loop(self):
        print(f"[Automation] Tick loop started for {self.controller.actor_id}.")
        while not self._stopping.is_set():
            result = await self.tick_once()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_for(result))
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self.running:
            print("[Automation] Tick loop already running.")
            return self.task
        self._stopping = asyncio.Event()
        self.task = asyncio.get_running_loop().create_task(self._loop())
        return self.task

    async def stop(self):
        task, self.task = self.task, None
        if self._stopping is not None:
            self._stopping.set()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._in_flight is not None and not self._in_flight.done():
            print("  -> Waiting for the running tick to finish...")
            await asyncio.wait([self._in_flight])
        try:
            await asyncio.to_thread(self.controller.relinquish)
        except Exception as e:
            print(f"  -> Warning: could not release race timer: {e}")
        print("[Automation] Tick loop stopped.")

    async def run_forever(self):
        self.start()
        try:
            await asyncio.shield(self.task)
        finally:
            await self.stop()
