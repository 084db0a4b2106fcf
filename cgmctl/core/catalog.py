"""Custom command construction per sensor type and security generation.

Every function here is pure: the same sensor fields always produce the same
bytes. Commands that do not apply to a sensor type fall back to the sentinel
backdoor or to the no-op command `00`, they never raise.
"""

from __future__ import annotations

import dataclasses

from cgmctl.core.cipher import DEFAULT_SEED, useful_function
from cgmctl.core.model import NFCCommand, Sensor, SensorType, Subcommand

UNIVERSAL_PREFIX = 0xA1
ACTIVATE = 0xA0
LOCK = 0xA2
READ_RAW = 0xA3
UNLOCK = 0xA4
READ_BLOCK = 0xB0
WRITE_BLOCK = 0xB1
LOCK_BLOCK = 0xB2
READ_BLOCKS = 0xB3
WRITE_BLOCKS = 0xB4

# Subcommands from 0x20 on belong to the challenge/response family and carry no suffix.
AUTH_SUFFIX_THRESHOLD = 0x20

PRO_H_ACTIVATION_SUFFIX = bytes.fromhex("4A454D573136382D5430323638365F23")
SENTINEL_COMMAND = NFCCommand(code=0x00)


def nfc_command(
    sensor: Sensor,
    subcommand: Subcommand | int,
    parameters: bytes = b"",
) -> NFCCommand:
    """Build an `A1` framed command: subcommand + parameters (+ unlock code) + auth suffix."""
    code = Subcommand(subcommand)
    payload = bytes([code]) + parameters

    unlock_code = b""
    seed = DEFAULT_SEED

    if code is Subcommand.ENABLE_STREAMING:
        # The unlock code and the sensor UID / patch info are needed again to
        # log in to the peripheral once it starts advertising.
        unlock_code = (sensor.streaming_unlock_code & 0xFFFFFFFF).to_bytes(4, "little")
        patch_word = int.from_bytes(sensor.patch_info[4:6].ljust(2, b"\x00"), "little")
        seed = patch_word ^ int.from_bytes(unlock_code[0:2], "little")

    payload += unlock_code

    if code < AUTH_SUFFIX_THRESHOLD:
        payload += useful_function(sensor.uid, int(code), seed)

    return NFCCommand(code=UNIVERSAL_PREFIX, parameters=payload, description=code.description)


def activation_command(sensor: Sensor) -> NFCCommand:
    if sensor.type is SensorType.GEN1:
        return NFCCommand(code=ACTIVATE, parameters=sensor.backdoor, description="activate")
    if sensor.type is SensorType.PRO_H:
        return NFCCommand(
            code=ACTIVATE,
            parameters=sensor.backdoor + PRO_H_ACTIVATION_SUFFIX,
            description="activate",
        )
    if sensor.type is SensorType.GEN2:
        return nfc_command(sensor, Subcommand.ACTIVATE)
    return SENTINEL_COMMAND


def universal_command() -> NFCCommand:
    return NFCCommand(code=UNIVERSAL_PREFIX, description="A1 universal prefix")


def get_patch_info_command() -> NFCCommand:
    return dataclasses.replace(universal_command(), description="get patch info")


def lock_command(sensor: Sensor) -> NFCCommand:
    return NFCCommand(code=LOCK, parameters=sensor.backdoor, description="lock")


def read_raw_command(sensor: Sensor, address: int | None = None, words: int | None = None) -> NFCCommand:
    parameters = sensor.backdoor
    if address is not None and words is not None:
        parameters += bytes([address & 0xFF, (address >> 8) & 0xFF, words])
    return NFCCommand(code=READ_RAW, parameters=parameters, description="read raw")


def unlock_command(sensor: Sensor) -> NFCCommand:
    return NFCCommand(code=UNLOCK, parameters=sensor.backdoor, description="unlock")


def read_block_command() -> NFCCommand:
    return NFCCommand(code=READ_BLOCK, description="B0 read block")


def read_blocks_command() -> NFCCommand:
    return NFCCommand(code=READ_BLOCKS, description="B3 read blocks")


def write_block_command() -> NFCCommand:
    """Replies with error 0x12 (content cannot be changed) on locked FRAM."""
    return NFCCommand(code=WRITE_BLOCK, description="B1 write block")


def write_blocks_command() -> NFCCommand:
    """Three blocks per request exceed the 32-byte input buffer."""
    return NFCCommand(code=WRITE_BLOCKS, description="B4 write blocks")


def lock_block_command() -> NFCCommand:
    return NFCCommand(code=LOCK_BLOCK, description="B2 lock block")


def read_block_range_command(sensor: Sensor, block: int, requested: int) -> NFCCommand:
    """Read `requested` blocks from `block` in the dialect of the sensor's generation.

    Generation 1 hardware has no one-block multi-read, so a single block
    goes through B0. Generation 2 and later use `A1 21` while the block
    index fits the one-byte address form.
    """
    if sensor.security_generation > 1 and block <= 0xFF:
        return nfc_command(sensor, Subcommand.READ_BLOCKS, bytes([block, requested - 1]))
    address = bytes([block & 0xFF, (block >> 8) & 0xFF])
    if requested == 1:
        return dataclasses.replace(read_block_command(), parameters=address)
    return dataclasses.replace(read_blocks_command(), parameters=address + bytes([requested - 1]))
