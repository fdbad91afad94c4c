import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from fleet_autoscaler.models import ScalingDirection
from fleet_autoscaler.state.document import State, StateDocument

STATE_FIELD = 'key_to_last_action_time'


def ledger_key(pool_id: str, direction: ScalingDirection) -> str:
    return f"{pool_id}:{ScalingDirection(direction).value}"


def parse_timestamp(value) -> Optional[float]:
    """
    Parse a stored last-action time.

    Epoch seconds are the current format; ISO-8601 strings written by older versions are
    still accepted.

    Returns:
        float: Epoch seconds, or None if the value cannot be understood
    """
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        pass
    try:
        dt = datetime.fromisoformat(str(value))
    except ValueError:
        logging.warning(f"Invalid timestamp format in scaling state: {value}")
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _format(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S')


class CooldownLedger:
    """
    Last successful resize time per pool and direction.

    The ledger is loaded once per resize pass and then consulted in memory. Recording an
    action updates the in-memory copy and writes only that entry back to the state document,
    so concurrent records for different pools merge instead of overwriting each other.
    """

    def __init__(self, document: StateDocument, scale_out_cooldown: float, scale_in_cooldown: float):
        self._document = document
        self._cooldowns = {
            ScalingDirection.SCALE_OUT: scale_out_cooldown,
            ScalingDirection.SCALE_IN: scale_in_cooldown,
        }
        self._entries: Dict[str, float] = {}

    async def load(self) -> 'CooldownLedger':
        state = await self._document.get()
        raw = state.get(STATE_FIELD) or {}
        entries = {}
        for key, value in raw.items():
            ts = parse_timestamp(value)
            if ts is not None:
                entries[key] = ts
        self._entries = entries
        logging.debug(f"Loaded {len(entries)} cooldown ledger entries from {self._document.key}")
        return self

    def get_last_action_time(self, pool_id: str, direction: ScalingDirection) -> Optional[float]:
        return self._entries.get(ledger_key(pool_id, direction))

    def can_scale(self, pool_id: str, direction: ScalingDirection, now: datetime) -> bool:
        """
        Check whether the cooldown for this pool and direction has elapsed.

        Args:
            pool_id: Pool being resized
            direction: Scale-out or scale-in
            now: Current time

        Returns:
            bool: True if no action was recorded or the cooldown has fully elapsed
        """
        last_time = self.get_last_action_time(pool_id, direction)
        if last_time is None:
            return True

        cooldown = self._cooldowns[ScalingDirection(direction)]
        elapsed_time = now.timestamp() - last_time
        if elapsed_time < cooldown:
            logging.info(f"In cooldown period for {ScalingDirection(direction).value} of pool {pool_id}. "
                         f"Last action: {_format(last_time)}, Remaining: {cooldown - elapsed_time:.2f}s")
            return False
        return True

    async def record(self, pool_id: str, direction: ScalingDirection, now: datetime) -> None:
        key = ledger_key(pool_id, direction)
        ts = now.timestamp()
        self._entries[key] = ts

        def set_last_action_time(state: State):
            state.setdefault(STATE_FIELD, {})[key] = ts

        await self._document.update(set_last_action_time)
        logging.info(f"Recorded {ScalingDirection(direction).value} of pool {pool_id} at {_format(ts)}")

    async def prune(self, valid_pool_ids: Iterable[str], now: datetime) -> int:
        """
        Drop expired entries for pools that no longer exist.

        An entry still inside its cooldown is kept even when its pool is missing, so a pool
        that drops out of one bad fleet snapshot is still gated when it comes back.

        Returns:
            int: Number of entries removed
        """
        valid = set(valid_pool_ids)
        max_cooldown = max(self._cooldowns.values())
        stale = [key for key, ts in self._entries.items()
                 if key.rsplit(':', 1)[0] not in valid and now.timestamp() - ts >= max_cooldown]
        if not stale:
            return 0

        def remove_stale_keys(state: State):
            entries = state.get(STATE_FIELD) or {}
            for key in stale:
                # Another writer may have recorded a fresh action since we loaded
                ts = parse_timestamp(entries.get(key))
                if ts is None or now.timestamp() - ts >= max_cooldown:
                    entries.pop(key, None)
            state[STATE_FIELD] = entries

        await self._document.update(remove_stale_keys)
        for key in stale:
            self._entries.pop(key, None)
        logging.info(f"Removed {len(stale)} stale cooldown ledger entries")
        return len(stale)
