"""
Relay addressing shared by the bus, schedule and API layers.
"""

from dataclasses import dataclass

from common.exceptions import ValidationError

# Coil addresses are 16-bit, so relay numbers run 1..65536
MAX_RELAY = 65536
# Largest write-multiple-coils request the protocol allows
MAX_BLOCK_COILS = 1968


@dataclass(frozen=True, order=True)
class RelayRef:
    """One relay output: (slave_id, relay) with relay numbered from 1"""
    slave_id: int
    relay: int

    @property
    def coil(self) -> int:
        """Zero-based coil address on the slave"""
        return self.relay - 1

    @property
    def key(self) -> str:
        return f"{self.slave_id}_{self.relay}"

    def __str__(self) -> str:
        return f"slave {self.slave_id} relay {self.relay}"

    @classmethod
    def parse(cls, slave_id, relay) -> "RelayRef":
        """Build from loosely typed input (URL segments, JSON bodies)"""
        try:
            slave = _strict_int(slave_id)
            number = _strict_int(relay)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid relay address {slave_id!r}/{relay!r}", field="relay")
        ref = cls(slave, number)
        ref.validate()
        return ref

    def validate(self) -> None:
        """Raise ValidationError unless the relay maps to a coil address"""
        if not 1 <= self.relay <= MAX_RELAY:
            raise ValidationError(
                f"Relay number must be between 1 and {MAX_RELAY}, got {self.relay}",
                field="relay",
            )


def _strict_int(value) -> int:
    if isinstance(value, bool):
        raise TypeError("bool is not a relay address")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{value} is not a whole number")
    if isinstance(value, str):
        value = value.strip()
    return int(value)
