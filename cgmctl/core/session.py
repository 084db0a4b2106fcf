"""Per-encounter state machine: connect, handshake, identify, dispatch, terminate."""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime

from cgmctl.core.block_io import BlockIO
from cgmctl.core.catalog import activation_command, get_patch_info_command, nfc_command
from cgmctl.core.context import SessionContext
from cgmctl.core.detection import (
    apply_manufacturer,
    apply_patch_info,
    firmware_label,
    manufacturer_label,
    serial_number,
)
from cgmctl.core.errors import (
    CgmctlError,
    CommandNotSupportedError,
    CustomCommandError,
    DecodingServiceError,
    HandshakeError,
    NFCError,
    SessionCanceledError,
    TransportError,
)
from cgmctl.core.fram import (
    FOOTER,
    FRAM_BLOCKS,
    FRAM_RAW_ADDRESS,
    FRAM_SIZE,
    find_crc_sections,
    prolong_image,
    reset_image,
)
from cgmctl.core.hexdump import hex_dump
from cgmctl.core.iso15693 import format_fault
from cgmctl.core.model import (
    BLOCK_SIZE,
    NFCCommand,
    SensorState,
    SensorType,
    SessionOutcome,
    Subcommand,
    TaskRequest,
)

LOGGER = logging.getLogger(__name__)

# Libre 1 memory map: (address, length, dump header)
RAW_DUMP_REGIONS = (
    (0x1A00, 64, "Config RAM (patch UID at 0x1A08):"),
    (0x1C00, 512, "SRAM:"),
    (0xFFAC, 36, "Patch table for A0-A4 E0-E2 commands:"),
    (FRAM_RAW_ADDRESS, FRAM_SIZE, "FRAM:"),
)

# With an encrypted sensor B3 is limited to 89 blocks (header first, decrypted FRAM mirrored last).
DUMP_BLOCKS_ENCRYPTED = 89
DUMP_BLOCKS = 1252
LIBRE1_FRAM_BLOCKS = 244

WRITING_TASKS = (TaskRequest.ACTIVATE, TaskRequest.UNLOCK, TaskRequest.RESET, TaskRequest.PROLONG)


def _log_partial(exc: Exception) -> None:
    partial = getattr(exc, "partial", b"")
    if not partial:
        return
    header = f"NFC: {len(partial)} bytes read before the failure:"
    if isinstance(exc, CustomCommandError):
        LOGGER.info(hex_dump(partial, header, address=exc.start))
    else:
        LOGGER.info(hex_dump(partial, header, starting_block=exc.start))


class SessionOrchestrator:
    """Drive one tag encounter for the task held by the context."""

    def __init__(self, context: SessionContext) -> None:
        self.context = context
        self.io = BlockIO(context)

    async def handle_tag(self) -> SessionOutcome:
        context = self.context
        task = context.task_request
        error: str | None = None
        canceled = False

        LOGGER.info("NFC: did detect tag")
        try:
            if await self._connect():
                await self._handshake()
                self._identify()
                await self._dispatch()
            else:
                error = context.error_message
        except SessionCanceledError:
            LOGGER.debug("NFC: session canceled by the user")
            canceled = True
        except CgmctlError as exc:
            error = str(exc)
            LOGGER.error("NFC: %s", format_fault(exc))
            _log_partial(exc)
            context.invalidate(error)
        finally:
            context.complete_task()
            context.invalidate()

        return SessionOutcome(task=task, sensor=context.sensor, error=error, canceled=canceled)

    async def _connect(self) -> bool:
        try:
            await self.context.transport.connect()
        except TransportError as exc:
            LOGGER.error("NFC: %s", exc)
            self.context.invalidate(f"Connection failure: {exc}")
            return False
        return True

    async def _read_patch_info(self, *, log_failure: bool = True) -> bool:
        command = get_patch_info_command()
        try:
            output = await self.context.transport.custom_command(command.code, command.parameters)
        except TransportError as exc:
            if log_failure:
                LOGGER.warning("NFC: error while getting patch info: %s", exc)
            return False
        apply_patch_info(self.context.sensor, bytes(output))
        return True

    async def _handshake(self) -> None:
        context = self.context
        retry = 0
        while True:
            if retry > 0:
                context.haptics.pop()
                LOGGER.info("NFC: retry # %d...", retry)

            # Libre 3 answers system info only after an A1 wake-up.
            await self._read_patch_info(log_failure=False)

            try:
                context.system_info = await context.transport.system_info()
            except TransportError as exc:
                LOGGER.warning("NFC: error while getting system info: %s", exc)
                if retry >= context.retries:
                    message = f"Error while getting system info: {exc}"
                    context.invalidate(message)
                    raise HandshakeError(message) from exc
                retry += 1
                continue
            context.haptics.pop()

            if await self._read_patch_info() or retry >= context.retries:
                return
            retry += 1

    def _identify(self) -> None:
        context = self.context
        transport = context.transport
        sensor = context.sensor

        LOGGER.info("NFC: IC identifier: %s", transport.identifier.hex())
        apply_manufacturer(sensor, transport.ic_manufacturer_code)
        LOGGER.info("NFC: IC manufacturer code: 0x%s", manufacturer_label(transport.ic_manufacturer_code))
        LOGGER.info("NFC: IC serial number: %s", transport.ic_serial_number.hex())
        LOGGER.info("NFC: %s", firmware_label(transport.identifier))

        info = context.system_info
        if info is not None:
            LOGGER.info("NFC: IC reference: 0x%X", info.ic_reference)
            if info.application_family_id != -1:
                LOGGER.info("NFC: application family id (AFI): %d", info.application_family_id)
            if info.data_storage_format_id != -1:
                LOGGER.info("NFC: data storage format id: %d", info.data_storage_format_id)
            LOGGER.info("NFC: memory size: %d blocks", info.total_blocks)
            LOGGER.info("NFC: block size: %d", info.block_size)

        sensor.uid = bytes(transport.identifier)[::-1]
        LOGGER.info("NFC: sensor uid: %s", sensor.uid.hex())

        if sensor.patch_info:
            LOGGER.info("NFC: patch info: %s", sensor.patch_info.hex())
            kind = " (new 'A2' kind)" if sensor.patch_info[0] == 0xA2 else ""
            LOGGER.info("NFC: sensor type: %s%s", sensor.type, kind)
            context.settings.patch_uid = sensor.uid
            context.settings.patch_info = sensor.patch_info

        LOGGER.info("NFC: sensor serial number: %s", serial_number(sensor))

    async def _dispatch(self) -> None:
        context = self.context
        sensor = context.sensor
        task = context.task_request

        if task is not None:
            if task is TaskRequest.DUMP:
                await self._dump()
                return

            if sensor.security_generation > 1:
                await self._probe()

            if sensor.type is SensorType.GEN2 and task is TaskRequest.ENABLE_STREAMING:
                await self._enable_streaming()

            if context.task_request in WRITING_TASKS:
                try:
                    await self._execute(context.task_request)
                except (NFCError, TransportError) as exc:
                    LOGGER.error("NFC: '%s' task failed: %s", task.value, format_fault(exc))
                    _log_partial(exc)
                context.haptics.vibrate()
                sensor.detail_fram()
                return

        await self._read_memory()

    async def _dump(self) -> None:
        context = self.context
        sensor = context.sensor

        try:
            for address, length, header in RAW_DUMP_REGIONS:
                start, data = await self.io.read_raw(address, length)
                LOGGER.info(hex_dump(data, header, address=start))
        except (NFCError, TransportError) as exc:
            LOGGER.info("NFC: raw memory dump stopped: %s", format_fault(exc))

        try:
            start, data = await self.io.read(0, FRAM_BLOCKS)
            LOGGER.info(hex_dump(data, "ISO 15693 FRAM blocks:", starting_block=start))
            sensor.fram = data
            if sensor.encrypted_fram and len(sensor.fram) >= FRAM_SIZE:
                LOGGER.info(hex_dump(sensor.fram, "Decrypted FRAM:", starting_block=0))
        except (NFCError, TransportError) as exc:
            LOGGER.info("NFC: ISO 15693 FRAM read failed: %s", format_fault(exc))

        count = DUMP_BLOCKS_ENCRYPTED if sensor.encrypted_fram else DUMP_BLOCKS
        if sensor.security_generation > 1:
            count = FRAM_BLOCKS
        label = "A1 21" if sensor.security_generation > 1 else "B0/B3"

        try:
            start, data = await self.io.read_blocks(0, count)
        except (NFCError, TransportError) as exc:
            LOGGER.warning("NFC: 'read blocks %s' command error: %s", label, format_fault(exc))
            return

        context.haptics.vibrate()
        header = f"'{label}' command output ({len(data) // BLOCK_SIZE} blocks):"
        LOGGER.info(hex_dump(data, header, starting_block=start))

        if context.debug_level > 0:
            for offset, length in find_crc_sections(data):
                LOGGER.info(
                    "%s",
                    hex_dump(
                        data[offset : offset + length],
                        f"CRC matches for {length} bytes at #{offset // BLOCK_SIZE:x} "
                        f"[{offset + 2}...{offset + length - 1}]:",
                        address=0,
                    ),
                )

    async def _probe(self) -> None:
        context = self.context
        sensor = context.sensor
        commands = [
            nfc_command(sensor, Subcommand.READ_ATTRIBUTE),
            nfc_command(sensor, Subcommand.READ_CHALLENGE),
        ]
        if context.debug_level > 0:
            commands.extend(NFCCommand(code=code, description=f"{code:02x}") for code in range(0xA0, 0xE0))

        for command in commands:
            LOGGER.info(
                "NFC: sending %s '%s' command: code: 0x%02x, parameters: 0x%s",
                sensor.type,
                command.description,
                command.code,
                command.parameters.hex(),
            )
            try:
                output = bytes(await context.transport.custom_command(command.code, command.parameters))
            except TransportError as exc:
                LOGGER.info("NFC: '%s' command error: %s", command.description, format_fault(exc))
                continue
            LOGGER.info("NFC: '%s' command output (%d bytes): 0x%s", command.description, len(output), output.hex())
            if len(output) == 6:
                sensor.state = SensorState.from_raw(output[0])
                LOGGER.info("%s state: %s (0x%02x)", sensor.type, sensor.state.description.lower(), sensor.state)

    async def _enable_streaming(self) -> None:
        context = self.context
        sensor = context.sensor
        settings = context.settings

        previous_code = sensor.streaming_unlock_code
        sensor.streaming_unlock_code = settings.active_sensor_streaming_unlock_code
        command = nfc_command(sensor, Subcommand.ENABLE_STREAMING)
        LOGGER.info(
            "NFC: sending %s command to %s: code: 0x%02x, parameters: 0x%s",
            sensor.type,
            command.description,
            command.code,
            command.parameters.hex(),
        )

        address = ""
        try:
            output = bytes(await context.transport.custom_command(command.code, command.parameters))
        except TransportError as exc:
            LOGGER.warning("NFC: '%s' command error: %s", command.description, format_fault(exc))
        else:
            LOGGER.info("NFC: '%s' command output (%d bytes): 0x%s", command.description, len(output), output.hex())
            if len(output) == 6:
                address = ":".join(f"{byte:02X}" for byte in reversed(output))
                serial = serial_number(sensor)
                LOGGER.info(
                    "NFC: enabled BLE streaming on %s %s (unlock code: %d, MAC address: %s)",
                    sensor.type,
                    serial,
                    sensor.streaming_unlock_code,
                    address,
                )
                settings.active_sensor_serial = serial
                settings.active_sensor_address = address
                sensor.initial_patch_info = sensor.patch_info
                settings.active_sensor_initial_patch_info = sensor.patch_info
                sensor.streaming_unlock_count = 0
                settings.active_sensor_streaming_unlock_count = 0
        finally:
            # Cancellation lands here too: only an accepted code stays on the sensor.
            if not address:
                sensor.streaming_unlock_code = previous_code
            context.haptics.vibrate()
            context.complete_task()

        if address and context.scanner is not None:
            try:
                found = await context.scanner.rescan(address)
            except TransportError as exc:
                LOGGER.warning("BLE: re-scan for %s failed: %s", address, exc)
            else:
                LOGGER.info("BLE: peripheral %s %s", address, "found" if found else "not advertising yet")

    async def _execute(self, task: TaskRequest) -> None:
        sensor = self.context.sensor

        if task is TaskRequest.ACTIVATE:
            command = activation_command(sensor)
            if command.is_sentinel:
                raise CommandNotSupportedError(f"activation not supported by {sensor.type}")
            output = await self.io.send(command)
            LOGGER.info("NFC: '%s' command output (%d bytes): 0x%s", command.description, len(output), output.hex())
            if sensor.security_generation == 0:
                _, sensor.fram = await self.io.read(0, FRAM_BLOCKS)
            return

        if task is TaskRequest.UNLOCK:
            if sensor.security_generation != 1:
                raise CommandNotSupportedError(f"unlocking not supported by {sensor.type}")
            output = await self.io.send(nfc_command(sensor, Subcommand.UNLOCK))
            LOGGER.info("NFC: 'unlock' command output (%d bytes): 0x%s", len(output), output.hex())
            start, data = await self.io.read_blocks(0, FRAM_BLOCKS)
            LOGGER.info(hex_dump(data, "NFC: unlocked FRAM:", starting_block=start))
            sensor.fram = data
            return

        if sensor.type is not SensorType.GEN1:
            raise CommandNotSupportedError(f"'{task.value}' not supported by {sensor.type}")

        _, fram = await self.io.read(0, FRAM_BLOCKS)
        if task is TaskRequest.RESET:
            await self.io.write_raw(FRAM_RAW_ADDRESS, reset_image(fram))
        else:
            await self.io.write_raw(FRAM_RAW_ADDRESS + FOOTER[0], prolong_image(fram))
        _, sensor.fram = await self.io.read(0, FRAM_BLOCKS)

    async def _read_memory(self) -> None:
        context = self.context
        sensor = context.sensor
        blocks = FRAM_BLOCKS
        if context.task_request is TaskRequest.READ_FRAM and sensor.type is SensorType.GEN1:
            blocks = LIBRE1_FRAM_BLOCKS

        if sensor.security_generation == 2:
            await self._authenticate()

        if sensor.security_generation < 2:
            start, data = await self.io.read(0, blocks)
        else:
            start, data = await self.io.read_blocks(0, blocks)

        sensor.last_reading_date = datetime.now()
        context.haptics.vibrate()
        context.invalidate()
        LOGGER.info(hex_dump(data, f"NFC: did read {len(data) // BLOCK_SIZE} FRAM blocks:", starting_block=start))

        if sensor.security_generation == 2:
            sensor.encrypted_fram = data
            decoded = await self._decode(data)
            if decoded and len(decoded) % BLOCK_SIZE == 0:
                sensor.fram = decoded
            else:
                sensor.fram = data
        else:
            sensor.fram = data
        sensor.detail_fram()

    async def _authenticate(self) -> None:
        context = self.context
        sensor = context.sensor

        context.security_challenge = await self.io.send(nfc_command(sensor, Subcommand.READ_CHALLENGE))
        if context.decoder is None:
            LOGGER.info("NFC: no decoding service configured, skipping authentication")
            return

        try:
            await context.decoder.nfc_auth(sensor.uid, context.security_challenge)
            response = await context.decoder.nfc_data(sensor.uid, context.security_challenge)
            context.auth_context = response.p1
            LOGGER.info(
                "OOP: context: %d, authenticated `A1 1F get session info` command: %s",
                response.p1,
                response.data.hex(),
            )
            command = dataclasses.replace(
                nfc_command(sensor, Subcommand.GET_SESSION_INFO),
                parameters=response.data[3:],
            )
            context.session_info = await self.io.send(command)
            LOGGER.info("NFC: session info = %s", context.session_info.hex())
        except (DecodingServiceError, TransportError, ValueError) as exc:
            LOGGER.warning("NFC: authentication exchange failed: %s", exc)

    async def _decode(self, data: bytes) -> bytes | None:
        context = self.context
        sensor = context.sensor
        if context.decoder is None:
            return None
        try:
            response = await context.decoder.nfc_data_algorithm(
                context.auth_context,
                context.session_info,
                data,
                sensor.uid,
                sensor.patch_info,
            )
        except DecodingServiceError as exc:
            LOGGER.warning("OOP: decoding error: %s", exc)
            return None
        return response.data
