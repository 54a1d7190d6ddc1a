"""
Proximity gate: a door with a Bluetooth beacon only opens for a device
that reports a strong enough signal from that beacon.
"""

from dataclasses import dataclass
from typing import Optional

from shared.logging import get_logger
from ..rules.models import Door, ProximityReading

NO_SIGNAL = "no signal"
INSUFFICIENT_SIGNAL = "insufficient signal"
BEACON_MISMATCH = "beacon mismatch"

# Roughly five meters from a typical door beacon.
DEFAULT_MINIMUM_RSSI = -70


@dataclass(frozen=True)
class ProximityCheck:
    passed: bool
    reason: Optional[str] = None
    required_signal_strength: Optional[int] = None


class ProximityGate:
    """Checks a proximity reading against a door's beacon configuration."""

    def __init__(self, default_minimum_rssi: int = DEFAULT_MINIMUM_RSSI):
        self.default_minimum_rssi = default_minimum_rssi
        self.logger = get_logger("door_access.proximity")

    def required_signal_strength(self, door: Door) -> int:
        configured = door.proximity.minimum_signal_strength
        return self.default_minimum_rssi if configured is None else configured

    def check_proximity(self, door: Door, reading: Optional[ProximityReading]) -> ProximityCheck:
        """Pass when proximity is not required or the reading is close enough.

        RSSI values are negative dBm, so a stronger signal is the larger
        number and the comparison is a plain ``>=``.
        """
        if not door.proximity.enabled:
            return ProximityCheck(passed=True)

        required = self.required_signal_strength(door)

        if reading is None:
            return ProximityCheck(passed=False, reason=NO_SIGNAL, required_signal_strength=required)

        if (door.proximity.beacon_id and reading.beacon_id
                and reading.beacon_id != door.proximity.beacon_id):
            self.logger.info(
                "Proximity beacon mismatch",
                door_id=door.door_id,
                expected_beacon=door.proximity.beacon_id,
                reported_beacon=reading.beacon_id
            )
            return ProximityCheck(passed=False, reason=BEACON_MISMATCH, required_signal_strength=required)

        if reading.signal_strength >= required:
            return ProximityCheck(passed=True, required_signal_strength=required)

        return ProximityCheck(passed=False, reason=INSUFFICIENT_SIGNAL, required_signal_strength=required)
