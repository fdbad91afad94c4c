import asyncio
import logging
from typing import Awaitable, Callable, Optional


def always_leader() -> bool:
    return True


class Ticker:
    """
    Runs a tick callback at a fixed interval until stopped.

    Ticks never overlap: the next interval starts counting once the previous tick has
    finished. Ticks only run while is_leader() is true, so that in a multi-instance
    deployment just the elected instance resizes pools.
    """

    def __init__(self, interval: float, callback: Callable[[asyncio.Event], Awaitable],
                 is_leader: Callable[[], bool] = always_leader, name: str = 'autoscale'):
        self._interval = interval
        self._callback = callback
        self._is_leader = is_leader
        self._name = name
        self._stop_event: Optional[asyncio.Event] = None
        self.tick_count = 0

    def stop(self) -> None:
        """Ask the loop to stop. An in-progress tick sees the same event and stops between pools."""
        if self._stop_event is not None:
            self._stop_event.set()

    def _check_leader(self) -> bool:
        try:
            return bool(self._is_leader())
        except Exception as e:
            logging.error(f"Leadership check for {self._name} failed, skipping tick: {e}", exc_info=True)
            return False

    async def run(self) -> None:
        self._stop_event = asyncio.Event()
        logging.info(f"Starting {self._name} ticker with interval {self._interval}s")

        while not self._stop_event.is_set():
            if self._check_leader():
                try:
                    await self._callback(self._stop_event)
                    self.tick_count += 1
                except Exception as e:
                    logging.error(f"Error in {self._name} tick: {e}", exc_info=True)
            else:
                logging.debug(f"Not the leader, skipping {self._name} tick")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

        logging.info(f"Stopped {self._name} ticker")
