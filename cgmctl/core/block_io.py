"""Chunked block and raw-memory I/O against a connected tag."""

from __future__ import annotations

import asyncio
import logging

from cgmctl.core.catalog import lock_command, read_block_range_command, read_raw_command, unlock_command
from cgmctl.core.context import SessionContext
from cgmctl.core.errors import (
    CommandNotSupportedError,
    CustomCommandError,
    NFCError,
    ReadBlocksError,
    ReadError,
    TagResponseError,
    TransportError,
    WriteError,
)
from cgmctl.core.fram import FRAM_RAW_ADDRESS
from cgmctl.core.hexdump import hex_dump
from cgmctl.core.iso15693 import format_fault, is_retryable, iso15693_code
from cgmctl.core.model import BLOCK_SIZE, BlockRange, NFCCommand, SensorType

LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEST_BLOCKS = 3
# Three blocks exceed the 32-byte input buffer of the write commands.
WRITE_REQUEST_BLOCKS = 2
RAW_REQUEST_BYTES = 24
RAW_REQUEST_WORDS = 12  # real limit is 15
GEN2_DUMMY_BYTES = 8


class BlockIO:
    def __init__(self, context: SessionContext) -> None:
        self.context = context

    async def send(self, command: NFCCommand) -> bytes:
        sensor = self.context.sensor
        label = f" ({command.description})" if command.description else ""
        LOGGER.debug(
            "NFC: sending %s '%02x %s' custom command%s",
            sensor.type,
            command.code,
            command.parameters.hex(),
            label,
        )
        try:
            output = await self.context.transport.custom_command(command.code, command.parameters)
        except TransportError as exc:
            LOGGER.info(
                "NFC: %s '%s %02x %s' custom command error: %s",
                sensor.type,
                command.description,
                command.code,
                command.parameters.hex(),
                format_fault(exc),
            )
            raise
        return bytes(output)

    async def _pause_before_retry(self, retry: int) -> None:
        self.context.haptics.pop()
        LOGGER.info("NFC: retry # %d...", retry)
        if self.context.retry_delay_s > 0:
            await asyncio.sleep(self.context.retry_delay_s)

    def _can_retry(self, retry: int, exc: TransportError) -> bool:
        return retry <= self.context.retries and is_retryable(iso15693_code(exc))

    async def read(
        self,
        start: int,
        count: int,
        *,
        requesting: int = DEFAULT_REQUEST_BLOCKS,
    ) -> tuple[int, bytes]:
        """Read `count` blocks with the standard ISO read-multiple-blocks command."""
        buffer = bytearray()
        remaining = count
        requested = min(requesting, count)
        retry = 0

        while remaining > 0:
            block_range = BlockRange(start + len(buffer) // BLOCK_SIZE, requested)
            try:
                chunks = await self.context.transport.read_multiple_blocks(block_range)
                payload = b"".join(bytes(chunk) for chunk in chunks)
                if len(chunks) != requested or len(payload) != requested * BLOCK_SIZE:
                    raise TagResponseError(
                        f"expected {requested} blocks, got {len(chunks)} ({len(payload)} bytes)"
                    )
            except TransportError as exc:
                LOGGER.warning(
                    "NFC: error while reading multiple blocks %s: %s",
                    block_range,
                    format_fault(exc),
                )
                retry += 1
                if self._can_retry(retry, exc):
                    await self._pause_before_retry(retry)
                    continue
                if self.context.security_generation < 2 or self.context.task_request is None:
                    self.context.invalidate(f"Error while reading multiple blocks: {str(exc).lower()}")
                raise ReadError(
                    f"read error at blocks {block_range}: {format_fault(exc)}",
                    iso_code=iso15693_code(exc),
                    start=start,
                    partial=bytes(buffer),
                ) from exc

            buffer += payload
            remaining -= requested
            if 0 < remaining < requested:
                requested = remaining

        return start, bytes(buffer)

    async def read_blocks(
        self,
        start: int,
        count: int,
        *,
        requesting: int = DEFAULT_REQUEST_BLOCKS,
    ) -> tuple[int, bytes]:
        """Read `count` blocks with the custom B0/B3 or `A1 21` commands."""
        sensor = self.context.sensor
        if sensor.security_generation < 1:
            LOGGER.debug("NFC: B3 read blocks command not supported by %s", sensor.type)
            raise CommandNotSupportedError(start=start)

        buffer = bytearray()
        remaining = count
        requested = min(requesting, count)
        retry = 0
        label = "A1 21" if sensor.security_generation > 1 else "B0/B3"

        while remaining > 0:
            block = start + len(buffer) // BLOCK_SIZE
            command = read_block_range_command(sensor, block, requested)
            if not buffer:
                LOGGER.debug(
                    "NFC: sending '%02x %s' custom command (%s read blocks)",
                    command.code,
                    command.parameters.hex(),
                    sensor.type,
                )
            try:
                output = bytes(await self.context.transport.custom_command(command.code, command.parameters))
                if sensor.security_generation < 2:
                    payload = output
                else:
                    LOGGER.debug(
                        "'%02x %s %s' command output (%d bytes): 0x%s",
                        command.code,
                        command.parameters.hex(),
                        command.description,
                        len(output),
                        output.hex(),
                    )
                    payload = output[GEN2_DUMMY_BYTES:]
                if len(payload) != requested * BLOCK_SIZE:
                    raise TagResponseError(f"expected {requested * BLOCK_SIZE} bytes, got {len(payload)}")
            except TransportError as exc:
                LOGGER.info(
                    hex_dump(
                        bytes(buffer),
                        f"'{label}' command output ({len(buffer) // BLOCK_SIZE} blocks):",
                        starting_block=start,
                    )
                )
                if requested == 1:
                    LOGGER.warning("NFC: error while reading block #%x: %s", block, format_fault(exc))
                else:
                    LOGGER.warning(
                        "NFC: error while reading multiple blocks %s: %s",
                        BlockRange(block, requested),
                        format_fault(exc),
                    )
                retry += 1
                if self._can_retry(retry, exc):
                    await self._pause_before_retry(retry)
                    continue
                raise ReadBlocksError(
                    f"reading blocks error at block #{block:x}: {format_fault(exc)}",
                    iso_code=iso15693_code(exc),
                    start=start,
                    partial=bytes(buffer),
                ) from exc

            buffer += payload
            remaining -= requested
            if 0 < remaining < requested:
                requested = remaining

        return start, bytes(buffer)

    async def read_raw(self, address: int, length: int) -> tuple[int, bytes]:
        """Read `length` bytes of raw memory at `address` (Libre 1 only)."""
        sensor = self.context.sensor
        if sensor.type is not SensorType.GEN1:
            LOGGER.debug("NFC: A3 read raw command not supported by %s", sensor.type)
            raise CommandNotSupportedError(start=address)

        buffer = bytearray()
        remaining = length

        while remaining > 0:
            address_to_read = address + len(buffer)
            bytes_to_read = min(remaining, RAW_REQUEST_BYTES)

            remaining_words = remaining // 2
            if remaining % 2 == 1 or address_to_read % 2 == 1:
                remaining_words += 1
            words_to_read = min(remaining_words, RAW_REQUEST_WORDS)

            command = read_raw_command(sensor, address_to_read, words_to_read)
            if not buffer:
                LOGGER.debug(
                    "NFC: sending '%02x %s' custom command (%s read raw)",
                    command.code,
                    command.parameters.hex(),
                    sensor.type,
                )
            try:
                data = bytes(await self.context.transport.custom_command(command.code, command.parameters))
            except TransportError as exc:
                LOGGER.debug(
                    "NFC: error while reading %d words at raw memory 0x%04X: %s",
                    words_to_read,
                    address_to_read,
                    format_fault(exc),
                )
                raise CustomCommandError(
                    iso_code=iso15693_code(exc),
                    start=address,
                    partial=bytes(buffer),
                ) from exc

            if address_to_read % 2 == 1:
                data = data[1:]
            if len(data) - bytes_to_read == 1:
                data = data[:-1]
            if not data:
                raise CustomCommandError(
                    f"empty raw read at 0x{address_to_read:04X}",
                    start=address,
                    partial=bytes(buffer),
                )

            buffer += data
            remaining -= len(data)

        return address, bytes(buffer)

    async def write_raw(self, address: int, data: bytes) -> None:
        """Overwrite raw memory, writing back the FRAM-mirrored blocks (Libre 1 only).

        The write is bracketed by the backdoor unlock and lock commands.
        Faults inside the bracket are logged and not raised, so a failed
        write can leave the tag unlocked.
        """
        sensor = self.context.sensor
        if sensor.type is not SensorType.GEN1:
            LOGGER.debug("NFC: FRAM overwriting not supported by %s", sensor.type)
            raise CommandNotSupportedError(start=address)

        try:
            await self.send(unlock_command(sensor))

            aligned = (address // BLOCK_SIZE) * BLOCK_SIZE
            start_offset = address % BLOCK_SIZE
            end_aligned = ((address + len(data) - 1) // BLOCK_SIZE) * BLOCK_SIZE + BLOCK_SIZE - 1
            blocks_to_read = (end_aligned - aligned) // BLOCK_SIZE + 1

            read_address, current = await self.read_raw(aligned, blocks_to_read * BLOCK_SIZE)
            patched = bytearray(current)
            patched[start_offset : start_offset + len(data)] = data
            LOGGER.debug(
                "%s\n%s",
                hex_dump(current, "NFC: blocks to overwrite:", address=read_address),
                hex_dump(bytes(patched), "with blocks:", address=aligned),
            )

            if address >= FRAM_RAW_ADDRESS:
                first_block = aligned // BLOCK_SIZE - FRAM_RAW_ADDRESS // BLOCK_SIZE
                await self._write_blocks(first_block, bytes(patched))

            await self.send(lock_command(sensor))

        except (NFCError, TransportError) as exc:
            LOGGER.error(
                "NFC: raw write of %d bytes at 0x%04X aborted, tag may still be unlocked: %s",
                len(data),
                address,
                format_fault(exc),
            )

    async def write(self, start_block: int, data: bytes) -> None:
        """Write whole blocks starting at `start_block`."""
        sensor = self.context.sensor
        if sensor.security_generation >= 2:
            LOGGER.debug("NFC: block writing not supported by %s", sensor.type)
            raise CommandNotSupportedError(start=start_block)
        if not data or len(data) % BLOCK_SIZE != 0:
            raise ValueError(f"Write data must be a non-empty multiple of {BLOCK_SIZE} bytes, got {len(data)}")
        await self._write_blocks(start_block, data)

    async def _write_blocks(self, first_block: int, data: bytes) -> None:
        blocks = [data[i : i + BLOCK_SIZE] for i in range(0, len(data), BLOCK_SIZE)]
        for offset in range(0, len(blocks), WRITE_REQUEST_BLOCKS):
            chunk = blocks[offset : offset + WRITE_REQUEST_BLOCKS]
            block_range = BlockRange(first_block + offset, len(chunk))
            payload = b"".join(chunk).hex()
            try:
                await self.context.transport.write_multiple_blocks(block_range, chunk)
            except TransportError as exc:
                LOGGER.error(
                    "NFC: error while writing multiple blocks %s %s: %s",
                    block_range,
                    payload,
                    format_fault(exc),
                )
                raise WriteError(
                    f"write error at blocks {block_range}: {format_fault(exc)}",
                    iso_code=iso15693_code(exc),
                    start=block_range.start,
                ) from exc
            LOGGER.debug("NFC: wrote blocks %s %s", block_range, payload)
