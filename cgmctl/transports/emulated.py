"""In-memory ISO 15693 sensor tag driven by a YAML tag image."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from pathlib import Path

from cgmctl.core.catalog import (
    ACTIVATE,
    AUTH_SUFFIX_THRESHOLD,
    LOCK,
    READ_BLOCK,
    READ_BLOCKS,
    READ_RAW,
    UNIVERSAL_PREFIX,
    UNLOCK,
)
from cgmctl.core.cipher import DEFAULT_SEED, useful_function
from cgmctl.core.config import normalize_hex, read_document
from cgmctl.core.detection import MANUFACTURER_ABBOTT, MANUFACTURER_TEXAS_INSTRUMENTS, sensor_type_for
from cgmctl.core.errors import ConfigValidationError, SessionCanceledError, TagCommandError
from cgmctl.core.fram import FRAM_RAW_ADDRESS, STATE_OFFSET
from cgmctl.core.iso15693 import Iso15693Status
from cgmctl.core.model import (
    BACKDOOR_GEN1,
    BACKDOOR_PRO_H,
    BLOCK_SIZE,
    UID_LENGTH,
    BlockRange,
    SensorState,
    SensorType,
    Subcommand,
    SystemInfo,
)

LOGGER = logging.getLogger(__name__)

RAW_MEMORY_SIZE = 0x10000
CONFIG_UID_ADDRESS = 0x1A08
GEN2_DUMMY = b"\xa5" * 8
CHALLENGE = bytes(range(0x40, 0x40 + 25))
SESSION_INFO = bytes(range(0x80, 0x80 + 16))


class EmulatedTag:
    """A sensor tag answering the commands the protocol engine issues.

    FRAM contents are kept in clear for every generation: `A1 21` replies
    carry the eight dummy bytes of the real firmware but no encryption.
    """

    def __init__(
        self,
        *,
        identifier: bytes,
        patch_info: bytes,
        fram: bytes,
        manufacturer_code: int = MANUFACTURER_TEXAS_INSTRUMENTS,
        ic_serial_number: bytes = b"",
        total_blocks: int | None = None,
        streaming_address: str | None = None,
    ) -> None:
        if len(identifier) != UID_LENGTH:
            raise ValueError(f"Tag identifier must be {UID_LENGTH} bytes, got {len(identifier)}")
        if len(fram) % BLOCK_SIZE != 0:
            raise ValueError(f"FRAM length must be a multiple of {BLOCK_SIZE}, got {len(fram)}")

        self.identifier = bytes(identifier)
        self.ic_manufacturer_code = manufacturer_code
        self.ic_serial_number = bytes(ic_serial_number) or self.identifier[::-1][2:]
        self.patch_info = bytes(patch_info)
        self.total_blocks = total_blocks or len(fram) // BLOCK_SIZE
        self.memory = bytearray(self.total_blocks * BLOCK_SIZE)
        self.memory[: len(fram)] = fram[: len(self.memory)]
        self.raw = bytearray(RAW_MEMORY_SIZE)
        self.raw[CONFIG_UID_ADDRESS : CONFIG_UID_ADDRESS + UID_LENGTH] = self.identifier
        self.streaming_address = streaming_address

        if manufacturer_code == MANUFACTURER_ABBOTT:
            self.type, self.security_generation = SensorType.GEN3, 3
        else:
            self.type, self.security_generation = sensor_type_for(self.patch_info)

        self.state = SensorState.from_raw(self.memory[STATE_OFFSET]) if self.memory else SensorState.UNKNOWN
        self.unlocked = False
        self.fram_decrypted = False
        self.streaming_unlock_code: int | None = None
        self.connected = False
        self.invalidated = False
        self.invalidation_message: str | None = None
        self.calls: list[tuple[object, ...]] = []
        self._faults: dict[str, deque[int]] = {}
        self._cancel_on: str | None = None

    @property
    def uid(self) -> bytes:
        return self.identifier[::-1]

    @property
    def backdoor(self) -> bytes | None:
        if self.type is SensorType.GEN1:
            return BACKDOOR_GEN1
        if self.type is SensorType.PRO_H:
            return BACKDOOR_PRO_H
        return None

    def fail(self, operation: str, code: int, times: int = 1) -> None:
        """Make the next `times` calls of `operation` fail with ISO status `code`."""
        self._faults.setdefault(operation, deque()).extend([code] * times)

    def cancel_on(self, operation: str) -> None:
        """Simulate the user dismissing the session at the next `operation` call."""
        self._cancel_on = operation

    def _enter(self, operation: str, *details: object) -> None:
        self.calls.append((operation, *details))
        if self._cancel_on == operation:
            self._cancel_on = None
            raise SessionCanceledError("Session canceled by user")
        pending = self._faults.get(operation)
        if pending:
            raise TagCommandError(pending.popleft())

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    async def connect(self) -> None:
        self._enter("connect")
        self.connected = True

    async def system_info(self) -> SystemInfo:
        self._enter("system_info")
        return SystemInfo(
            total_blocks=self.total_blocks,
            block_size=BLOCK_SIZE,
            ic_reference=self.identifier[2],
        )

    def invalidate(self, message: str | None = None) -> None:
        self.invalidated = True
        self.invalidation_message = message
        self.connected = False
        LOGGER.debug("Emulated tag session invalidated%s", f": {message}" if message else "")

    async def read_multiple_blocks(self, block_range: BlockRange) -> list[bytes]:
        self._enter("read_multiple_blocks", block_range)
        self._check_range(block_range.start, block_range.count)
        return [bytes(self._block(block)) for block in range(block_range.start, block_range.end + 1)]

    async def write_multiple_blocks(self, block_range: BlockRange, blocks: Sequence[bytes]) -> None:
        self._enter("write_multiple_blocks", block_range, tuple(bytes(b) for b in blocks))
        if self.security_generation > 1:
            raise TagCommandError(Iso15693Status.COMMAND_NOT_SUPPORTED)
        self._check_range(block_range.start, block_range.count)
        if len(blocks) != block_range.count or any(len(block) != BLOCK_SIZE for block in blocks):
            raise TagCommandError(Iso15693Status.COMMAND_NOT_RECOGNIZED)
        if not self.unlocked:
            raise TagCommandError(Iso15693Status.CONTENT_CANNOT_BE_CHANGED)
        for offset, block in enumerate(blocks):
            start = (block_range.start + offset) * BLOCK_SIZE
            self.memory[start : start + BLOCK_SIZE] = block
        self.state = SensorState.from_raw(self.memory[STATE_OFFSET])

    async def custom_command(self, code: int, parameters: bytes) -> bytes:
        self._enter("custom_command", code, bytes(parameters))
        if code == UNIVERSAL_PREFIX:
            return self._universal(bytes(parameters))
        if code in (ACTIVATE, LOCK, READ_RAW, UNLOCK):
            return self._backdoor_command(code, bytes(parameters))
        if code in (READ_BLOCK, READ_BLOCKS):
            return self._read_blocks(code, bytes(parameters))
        raise TagCommandError(Iso15693Status.COMMAND_NOT_RECOGNIZED)

    def _block(self, block: int) -> bytes:
        return bytes(self.memory[block * BLOCK_SIZE : (block + 1) * BLOCK_SIZE])

    def _check_range(self, start: int, count: int) -> None:
        if start + count > self.total_blocks:
            raise TagCommandError(Iso15693Status.BLOCK_NOT_AVAILABLE)

    def _set_state(self, state: SensorState) -> None:
        self.state = state
        if len(self.memory) > STATE_OFFSET:
            self.memory[STATE_OFFSET] = state

    def _expected_suffix(self, subcommand: int, unlock_code: bytes = b"") -> bytes:
        seed = DEFAULT_SEED
        if unlock_code:
            patch_word = int.from_bytes(self.patch_info[4:6].ljust(2, b"\x00"), "little")
            seed = patch_word ^ int.from_bytes(unlock_code[0:2], "little")
        return useful_function(self.uid, subcommand, seed)

    def _universal(self, parameters: bytes) -> bytes:
        if not parameters:
            return self.patch_info
        if self.security_generation < 1:
            raise TagCommandError(Iso15693Status.COMMAND_NOT_SUPPORTED)

        subcommand = parameters[0]
        unlock_code = b""
        if subcommand == Subcommand.ENABLE_STREAMING:
            unlock_code = parameters[1:5]
        # The session-info command is pre-authenticated by the decoding service.
        if subcommand < AUTH_SUFFIX_THRESHOLD and subcommand != Subcommand.GET_SESSION_INFO:
            if parameters[-4:] != self._expected_suffix(subcommand, unlock_code):
                raise TagCommandError(Iso15693Status.UNKNOWN)

        if subcommand == Subcommand.UNLOCK and self.security_generation == 1:
            self.fram_decrypted = True
            return b""
        if subcommand == Subcommand.ACTIVATE:
            self._set_state(SensorState.WARMING_UP)
            return b""
        if subcommand == Subcommand.ENABLE_STREAMING and self.streaming_address:
            self.streaming_unlock_code = int.from_bytes(unlock_code, "little")
            return bytes(int(part, 16) for part in reversed(self.streaming_address.split(":")))
        if self.security_generation > 1:
            if subcommand == Subcommand.GET_SESSION_INFO:
                return GEN2_DUMMY + SESSION_INFO
            if subcommand == Subcommand.READ_CHALLENGE:
                return CHALLENGE
            if subcommand == Subcommand.READ_BLOCKS and len(parameters) >= 3:
                start, count = parameters[1], parameters[2] + 1
                self._check_range(start, count)
                return GEN2_DUMMY + b"".join(self._block(block) for block in range(start, start + count))
            if subcommand == Subcommand.READ_ATTRIBUTE:
                return bytes([self.state, 0, 0, 0, 0, 0])
        raise TagCommandError(Iso15693Status.COMMAND_NOT_SUPPORTED)

    def _backdoor_command(self, code: int, parameters: bytes) -> bytes:
        if self.backdoor is None:
            raise TagCommandError(Iso15693Status.COMMAND_NOT_SUPPORTED)
        if parameters[:4] != self.backdoor:
            raise TagCommandError(Iso15693Status.COMMAND_NOT_RECOGNIZED)

        if code == ACTIVATE:
            self._set_state(SensorState.WARMING_UP)
            return b""
        if code == UNLOCK:
            self.unlocked = True
            return b""
        if code == LOCK:
            self.unlocked = False
            return b""

        if self.type is not SensorType.GEN1 or len(parameters) < 7:
            raise TagCommandError(Iso15693Status.COMMAND_NOT_SUPPORTED)
        address = parameters[4] | (parameters[5] << 8)
        words = parameters[6]
        start = address & ~1
        return bytes(self._raw_byte(start + i) for i in range(words * 2))

    def _raw_byte(self, address: int) -> int:
        offset = address - FRAM_RAW_ADDRESS
        if 0 <= offset < len(self.memory):
            return self.memory[offset]
        return self.raw[address % RAW_MEMORY_SIZE]

    def _read_blocks(self, code: int, parameters: bytes) -> bytes:
        if self.security_generation < 1:
            raise TagCommandError(Iso15693Status.COMMAND_NOT_SUPPORTED)
        if len(parameters) < 2:
            raise TagCommandError(Iso15693Status.COMMAND_NOT_RECOGNIZED)
        start = parameters[0] | (parameters[1] << 8)
        count = 1
        if code == READ_BLOCKS:
            if len(parameters) < 3:
                raise TagCommandError(Iso15693Status.COMMAND_NOT_RECOGNIZED)
            count = parameters[2] + 1
        self._check_range(start, count)
        return b"".join(self._block(block) for block in range(start, start + count))


def load_tag_image(path: Path) -> EmulatedTag:
    doc = read_document(path, "tag_image.schema.json")

    identifier = normalize_hex(doc["identifier"], context="identifier")
    if len(identifier) != UID_LENGTH:
        raise ConfigValidationError(f"identifier in {path} must be {UID_LENGTH} bytes, got {len(identifier)}")

    fram = bytearray(normalize_hex(doc["fram"], context="fram"))
    if not fram or len(fram) % BLOCK_SIZE != 0:
        raise ConfigValidationError(f"fram in {path} must be a non-empty multiple of {BLOCK_SIZE} bytes")
    if "state" in doc and len(fram) > STATE_OFFSET:
        fram[STATE_OFFSET] = doc["state"]

    total_blocks = doc.get("total_blocks")
    if total_blocks is not None and total_blocks * BLOCK_SIZE < len(fram):
        raise ConfigValidationError(f"total_blocks in {path} is smaller than the fram image")

    return EmulatedTag(
        identifier=identifier,
        patch_info=normalize_hex(doc["patch_info"], context="patch_info"),
        fram=bytes(fram),
        manufacturer_code=doc.get("manufacturer_code", MANUFACTURER_TEXAS_INSTRUMENTS),
        ic_serial_number=normalize_hex(doc.get("ic_serial_number", ""), context="ic_serial_number"),
        total_blocks=total_blocks,
        streaming_address=doc.get("streaming_address"),
    )
