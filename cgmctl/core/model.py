"""Core data models used across the protocol engine, service, and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum

BLOCK_SIZE = 8
UID_LENGTH = 8
MAX_COMMAND_PARAMETERS = 32

BACKDOOR_GEN1 = bytes([0xC2, 0xAD, 0x75, 0x21])
BACKDOOR_PRO_H = bytes([0xC2, 0xAD, 0x00, 0x90])
BACKDOOR_SENTINEL = bytes([0xDE, 0xAD, 0xBE, 0xEF])

DEFAULT_STREAMING_UNLOCK_CODE = 42


class SensorType(str, Enum):
    GEN1 = "Libre 1"
    PRO_H = "Libre Pro/H"
    GEN2 = "Libre 2"
    GEN3 = "Libre 3"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


class SensorState(IntEnum):
    UNKNOWN = 0x00
    NOT_ACTIVATED = 0x01
    WARMING_UP = 0x02
    ACTIVE = 0x03
    EXPIRED = 0x04
    SHUTDOWN = 0x05
    FAILURE = 0x06

    @classmethod
    def from_raw(cls, value: int) -> SensorState:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def description(self) -> str:
        return self.name.replace("_", " ").capitalize()


class Subcommand(IntEnum):
    """Functional codes sent after the `A1` custom command."""

    UNKNOWN_0X10 = 0x10  # returns the number of parameters + 3
    UNLOCK = 0x1A  # FRAM readable in clear, further blocks dumpable with B0/B3
    ACTIVATE = 0x1B
    UNKNOWN_0X1C = 0x1C
    UNKNOWN_0X1D = 0x1D  # disables Bluetooth
    ENABLE_STREAMING = 0x1E
    GET_SESSION_INFO = 0x1F
    READ_CHALLENGE = 0x20  # returns 25 bytes
    READ_BLOCKS = 0x21
    READ_ATTRIBUTE = 0x22  # returns 6 bytes, [0] is the sensor state

    @classmethod
    def _missing_(cls, value: object) -> Subcommand | None:
        if isinstance(value, int) and 0 <= value <= 0xFF:
            member = int.__new__(cls, value)
            member._name_ = f"UNKNOWN_0X{value:02X}"
            member._value_ = value
            return member
        return None

    @property
    def description(self) -> str:
        return _SUBCOMMAND_DESCRIPTIONS.get(int(self), f"[unknown: 0x{int(self):02x}]")


_SUBCOMMAND_DESCRIPTIONS = {
    0x1A: "unlock",
    0x1B: "activate",
    0x1E: "enable BLE streaming",
    0x1F: "get session info",
    0x20: "read security challenge",
    0x21: "read FRAM blocks",
    0x22: "read patch attribute",
}


class TaskRequest(str, Enum):
    ACTIVATE = "activate"
    ENABLE_STREAMING = "enable-streaming"
    READ_FRAM = "read-fram"
    UNLOCK = "unlock"
    RESET = "reset"
    PROLONG = "prolong"
    DUMP = "dump"


@dataclass(frozen=True)
class NFCCommand:
    code: int
    parameters: bytes = b""
    description: str = ""

    def __post_init__(self) -> None:
        if not 0 <= self.code <= 0xFF:
            raise ValueError(f"Command code must fit in one byte, got {self.code:#x}")
        if len(self.parameters) > MAX_COMMAND_PARAMETERS:
            raise ValueError(
                f"Command parameters exceed the {MAX_COMMAND_PARAMETERS}-byte input buffer "
                f"({len(self.parameters)} bytes)"
            )

    @property
    def is_sentinel(self) -> bool:
        return self.code == 0x00

    def __str__(self) -> str:
        label = f" ({self.description})" if self.description else ""
        return f"{self.code:02x} {self.parameters.hex()}{label}"


@dataclass(frozen=True)
class BlockRange:
    start: int
    count: int

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError(f"Block range start must be >= 0, got {self.start}")
        if self.count < 1:
            raise ValueError(f"Block range count must be >= 1, got {self.count}")

    @property
    def end(self) -> int:
        return self.start + self.count - 1

    def __str__(self) -> str:
        return f"#{self.start:x} - #{self.end:x} ({self.start}-{self.end})"


@dataclass(frozen=True)
class SystemInfo:
    total_blocks: int
    block_size: int = BLOCK_SIZE
    ic_reference: int = 0
    application_family_id: int = -1
    data_storage_format_id: int = -1


@dataclass(frozen=True)
class Gen2Response:
    p1: int
    data: bytes


class Sensor:
    """One physical sensor, reused across requests while its UID stays the same."""

    def __init__(self) -> None:
        self.type = SensorType.UNKNOWN
        self.security_generation = 0
        self.patch_info = b""
        self.initial_patch_info = b""
        self.state = SensorState.UNKNOWN
        self.encrypted_fram = b""
        self.streaming_unlock_code = DEFAULT_STREAMING_UNLOCK_CODE
        self.streaming_unlock_count = 0
        self.last_reading_date: datetime | None = None
        self._uid = b""
        self._fram = b""

    @property
    def uid(self) -> bytes:
        return self._uid

    @uid.setter
    def uid(self, value: bytes) -> None:
        if len(value) != UID_LENGTH:
            raise ValueError(f"Sensor UID must be {UID_LENGTH} bytes, got {len(value)}")
        self._uid = bytes(value)

    @property
    def fram(self) -> bytes:
        return self._fram

    @fram.setter
    def fram(self, value: bytes) -> None:
        if len(value) % BLOCK_SIZE != 0:
            raise ValueError(f"FRAM length must be a multiple of {BLOCK_SIZE}, got {len(value)}")
        self._fram = bytes(value)

    @property
    def backdoor(self) -> bytes:
        if self.type is SensorType.GEN1:
            return BACKDOOR_GEN1
        if self.type is SensorType.PRO_H:
            return BACKDOOR_PRO_H
        return BACKDOOR_SENTINEL

    def detail_fram(self) -> None:
        if self.security_generation <= 1 and len(self._fram) >= BLOCK_SIZE:
            self.state = SensorState.from_raw(self._fram[4])

    def __repr__(self) -> str:
        return (
            f"Sensor(type={self.type.name}, generation={self.security_generation}, "
            f"uid={self._uid.hex()}, patch_info={self.patch_info.hex()}, state={self.state.name})"
        )


@dataclass
class Settings:
    """App-side values persisted between encounters."""

    active_sensor_serial: str = ""
    active_sensor_address: str = ""
    active_sensor_initial_patch_info: bytes = b""
    active_sensor_streaming_unlock_code: int = DEFAULT_STREAMING_UNLOCK_CODE
    active_sensor_streaming_unlock_count: int = 0
    patch_uid: bytes = b""
    patch_info: bytes = b""


@dataclass(frozen=True)
class SessionOutcome:
    task: TaskRequest | None
    sensor: Sensor
    error: str | None = None
    canceled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.canceled
