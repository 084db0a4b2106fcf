from __future__ import annotations

import logging

import pytest

from conftest import (
    LIBRE1_PATCH_INFO,
    LIBRE2_EU_PATCH_INFO,
    LIBRE2_US_PATCH_INFO,
    UID,
    CountingHaptics,
    FakeDecoder,
    FakeScanner,
    make_fram,
)
from cgmctl.core.context import SessionContext
from cgmctl.core.errors import DecodingServiceError, SessionCanceledError, TagCommandError, TransportConnectError
from cgmctl.core.fram import BODY, FOOTER, HEADER, MAX_LIFE_OFFSET, section_crc_ok
from cgmctl.core.model import Gen2Response, Sensor, SensorState, SensorType, Settings, TaskRequest
from cgmctl.core.session import SessionOrchestrator
from cgmctl.transports.emulated import GEN2_DUMMY, SESSION_INFO, EmulatedTag


class FailingDecoder(FakeDecoder):
    async def nfc_data_algorithm(self, *args) -> Gen2Response:
        raise DecodingServiceError("decoding service returned HTTP 500")


def _context(tag, task: TaskRequest | None = None, **kwargs) -> SessionContext:
    kwargs.setdefault("haptics", CountingHaptics())
    kwargs.setdefault("retry_delay_s", 0)
    return SessionContext(transport=tag, sensor=Sensor(), task_request=task, **kwargs)


def _custom_commands(tag) -> list[tuple[int, bytes]]:
    return [(call[1], call[2]) for call in tag.calls if call[0] == "custom_command"]


@pytest.mark.asyncio
async def test_read_identifies_libre1_and_reads_fram(make_tag) -> None:
    tag = make_tag()
    context = _context(tag)

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.succeeded
    sensor = outcome.sensor
    assert sensor.type is SensorType.GEN1
    assert sensor.uid == UID
    assert sensor.fram == bytes(tag.memory[:344])
    assert sensor.state is SensorState.ACTIVE
    assert sensor.last_reading_date is not None
    assert context.settings.patch_uid == UID
    assert context.settings.patch_info == tag.patch_info
    assert tag.invalidated
    assert context.haptics.vibrations == 1


@pytest.mark.asyncio
async def test_dump_on_libre1_collects_fram_and_terminates(make_tag) -> None:
    tag = make_tag()
    context = _context(tag, TaskRequest.DUMP)

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.succeeded
    assert outcome.task is TaskRequest.DUMP
    assert outcome.sensor.fram == bytes(tag.memory[:344])
    assert context.task_request is None
    assert tag.invalidated
    # The raw regions go through A3, the B0/B3 dump is skipped on generation 0.
    codes = {code for code, _ in _custom_commands(tag)}
    assert codes == {0xA1, 0xA3}


@pytest.mark.asyncio
async def test_read_fram_reads_full_libre1_memory(make_tag) -> None:
    tag = make_tag()
    outcome = await SessionOrchestrator(_context(tag, TaskRequest.READ_FRAM)).handle_tag()

    assert outcome.succeeded
    assert len(outcome.sensor.fram) == 244 * 8


@pytest.mark.asyncio
async def test_enable_streaming_records_peripheral_address(make_tag) -> None:
    tag = make_tag(LIBRE2_EU_PATCH_INFO, streaming_address="5C:02:72:11:22:33")
    scanner = FakeScanner()
    settings = Settings(active_sensor_streaming_unlock_code=0x12345678, active_sensor_streaming_unlock_count=4)
    context = _context(tag, TaskRequest.ENABLE_STREAMING, settings=settings, scanner=scanner)

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.succeeded
    assert settings.active_sensor_address == "5C:02:72:11:22:33"
    assert settings.active_sensor_serial == "3MH001DG75W"
    assert settings.active_sensor_initial_patch_info == tag.patch_info
    assert settings.active_sensor_streaming_unlock_count == 0
    assert outcome.sensor.streaming_unlock_code == 0x12345678
    assert tag.streaming_unlock_code == 0x12345678
    assert scanner.addresses == ["5C:02:72:11:22:33"]
    # The memory read still follows once the task is done.
    assert outcome.sensor.fram == bytes(tag.memory[:344])


@pytest.mark.asyncio
async def test_enable_streaming_failure_restores_unlock_code(make_tag) -> None:
    tag = make_tag(LIBRE2_EU_PATCH_INFO)
    scanner = FakeScanner()
    settings = Settings(active_sensor_streaming_unlock_code=7)
    context = _context(tag, TaskRequest.ENABLE_STREAMING, settings=settings, scanner=scanner)

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.succeeded
    assert outcome.sensor.streaming_unlock_code == Sensor().streaming_unlock_code
    assert settings.active_sensor_address == ""
    assert scanner.addresses == []


@pytest.mark.asyncio
async def test_handshake_gives_up_after_retry_ceiling(make_tag) -> None:
    tag = make_tag()
    tag.fail("system_info", 0x0F, times=6)
    context = _context(tag, TaskRequest.READ_FRAM)

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.error is not None
    assert outcome.error.startswith("Error while getting system info:")
    assert tag.count("system_info") == 6
    assert context.haptics.pops == 5
    assert tag.invalidation_message == outcome.error
    assert tag.count("read_multiple_blocks") == 0


@pytest.mark.asyncio
async def test_handshake_recovers_from_transient_faults(make_tag) -> None:
    tag = make_tag()
    tag.fail("system_info", 0x0F, times=2)

    outcome = await SessionOrchestrator(_context(tag)).handle_tag()

    assert outcome.succeeded
    assert tag.count("system_info") == 3


@pytest.mark.asyncio
async def test_failed_wake_up_read_is_tolerated(make_tag) -> None:
    tag = make_tag()
    tag.fail("custom_command", 0x0F)

    outcome = await SessionOrchestrator(_context(tag)).handle_tag()

    assert outcome.succeeded
    assert outcome.sensor.type is SensorType.GEN1


@pytest.mark.asyncio
async def test_missing_patch_info_is_not_fatal(make_tag) -> None:
    tag = make_tag()
    tag.fail("custom_command", 0x0F, times=12)

    outcome = await SessionOrchestrator(_context(tag)).handle_tag()

    assert outcome.succeeded
    assert tag.count("custom_command") == 12
    assert outcome.sensor.type is SensorType.UNKNOWN
    assert outcome.sensor.fram == bytes(tag.memory[:344])


@pytest.mark.asyncio
async def test_connection_failure_ends_session(make_tag) -> None:
    tag = make_tag()
    tag.fail("connect", 0x0F)

    outcome = await SessionOrchestrator(_context(tag)).handle_tag()

    assert outcome.error == "Connection failure: tag responded with error 0x0f"
    assert tag.count("system_info") == 0


@pytest.mark.asyncio
async def test_cancellation_is_silent(make_tag, caplog) -> None:
    tag = make_tag()
    tag.cancel_on("read_multiple_blocks")
    caplog.set_level(logging.DEBUG, logger="cgmctl")

    outcome = await SessionOrchestrator(_context(tag, TaskRequest.READ_FRAM)).handle_tag()

    assert outcome.canceled
    assert outcome.error is None
    assert not outcome.succeeded
    assert not [record for record in caplog.records if record.levelno >= logging.ERROR]
    assert tag.invalidated


@pytest.mark.asyncio
async def test_activate_libre1_moves_to_warming_up(make_tag) -> None:
    tag = make_tag(state=SensorState.NOT_ACTIVATED)
    context = _context(tag, TaskRequest.ACTIVATE)

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.succeeded
    assert tag.state is SensorState.WARMING_UP
    assert outcome.sensor.state is SensorState.WARMING_UP
    assert (0xA0, bytes.fromhex("c2ad7521")) in _custom_commands(tag)
    assert context.haptics.vibrations == 1
    assert tag.invalidated


@pytest.mark.asyncio
async def test_activate_libre2_uses_universal_subcommand(make_tag) -> None:
    tag = make_tag(LIBRE2_EU_PATCH_INFO, state=SensorState.NOT_ACTIVATED)

    outcome = await SessionOrchestrator(_context(tag, TaskRequest.ACTIVATE)).handle_tag()

    assert outcome.succeeded
    assert tag.state is SensorState.WARMING_UP
    assert (0xA1, bytes.fromhex("1b18df7c40")) in _custom_commands(tag)


@pytest.mark.asyncio
async def test_activate_libre3_is_not_sent(make_tag) -> None:
    tag = make_tag("a50001000100", manufacturer_code=0x7A)

    outcome = await SessionOrchestrator(_context(tag, TaskRequest.ACTIVATE)).handle_tag()

    assert outcome.error is None
    assert outcome.sensor.type is SensorType.GEN3
    assert 0xA0 not in {code for code, _ in _custom_commands(tag)}
    # The attribute probe still reports the state.
    assert outcome.sensor.state is SensorState.ACTIVE


@pytest.mark.asyncio
async def test_unlock_libre2_reads_decrypted_fram(make_tag) -> None:
    tag = make_tag(LIBRE2_EU_PATCH_INFO)

    outcome = await SessionOrchestrator(_context(tag, TaskRequest.UNLOCK)).handle_tag()

    assert outcome.succeeded
    assert tag.fram_decrypted
    assert outcome.sensor.fram == bytes(tag.memory[:344])
    assert {code for code, _ in _custom_commands(tag)} >= {0xA1, 0xB3}


@pytest.mark.asyncio
async def test_unlock_unsupported_on_libre1(make_tag) -> None:
    tag = make_tag()

    outcome = await SessionOrchestrator(_context(tag, TaskRequest.UNLOCK)).handle_tag()

    assert outcome.error is None
    assert outcome.sensor.fram == b""
    assert all(parameters == b"" for code, parameters in _custom_commands(tag) if code == 0xA1)


@pytest.mark.asyncio
async def test_reset_rewrites_header_and_body(make_tag) -> None:
    tag = make_tag()

    outcome = await SessionOrchestrator(_context(tag, TaskRequest.RESET)).handle_tag()

    assert outcome.succeeded
    memory = bytes(tag.memory[:344])
    assert memory[4] == SensorState.NOT_ACTIVATED
    assert section_crc_ok(memory, HEADER)
    assert section_crc_ok(memory, BODY)
    assert memory[FOOTER[0] :] == make_fram()[FOOTER[0] :]
    assert outcome.sensor.state is SensorState.NOT_ACTIVATED
    assert not tag.unlocked


@pytest.mark.asyncio
async def test_prolong_rewrites_footer(make_tag) -> None:
    tag = make_tag()

    outcome = await SessionOrchestrator(_context(tag, TaskRequest.PROLONG)).handle_tag()

    assert outcome.succeeded
    memory = bytes(tag.memory[:344])
    assert memory[MAX_LIFE_OFFSET : MAX_LIFE_OFFSET + 2] == b"\xff\xff"
    assert section_crc_ok(memory, FOOTER)
    assert memory[: FOOTER[0]] == make_fram()[: FOOTER[0]]
    writes = [call[1] for call in tag.calls if call[0] == "write_multiple_blocks"]
    assert [block_range.start for block_range in writes] == [40, 42]


@pytest.mark.asyncio
async def test_reset_unsupported_on_libre2(make_tag) -> None:
    tag = make_tag(LIBRE2_EU_PATCH_INFO)

    outcome = await SessionOrchestrator(_context(tag, TaskRequest.RESET)).handle_tag()

    assert outcome.error is None
    assert tag.count("write_multiple_blocks") == 0


@pytest.mark.asyncio
async def test_generation_2_read_is_decoded(make_tag) -> None:
    tag = make_tag(LIBRE2_US_PATCH_INFO)
    decoded = make_fram(SensorState.EXPIRED)
    decoder = FakeDecoder(decoded=decoded)
    context = _context(tag, decoder=decoder)

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.succeeded
    sensor = outcome.sensor
    assert sensor.encrypted_fram == bytes(tag.memory[:344])
    assert sensor.fram == decoded
    assert context.auth_context == 7
    assert context.session_info == GEN2_DUMMY + SESSION_INFO
    assert decoder.auth_calls[0][0] == UID
    p1, auth_data, content, patch_uid, patch_info = decoder.algorithm_calls[0]
    assert (p1, auth_data, content) == (7, GEN2_DUMMY + SESSION_INFO, sensor.encrypted_fram)
    assert (patch_uid, patch_info) == (UID, tag.patch_info)
    # Authenticated session info command is forwarded as returned by the service.
    assert (0xA1, bytes.fromhex("1f") + bytes(8)) in _custom_commands(tag)


@pytest.mark.asyncio
async def test_generation_2_decoding_failure_keeps_raw_data(make_tag) -> None:
    tag = make_tag(LIBRE2_US_PATCH_INFO)

    outcome = await SessionOrchestrator(_context(tag, decoder=FailingDecoder())).handle_tag()

    assert outcome.succeeded
    assert outcome.sensor.fram == outcome.sensor.encrypted_fram == bytes(tag.memory[:344])


@pytest.mark.asyncio
async def test_generation_2_without_decoder_skips_authentication(make_tag) -> None:
    tag = make_tag(LIBRE2_US_PATCH_INFO)
    context = _context(tag)

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.succeeded
    assert context.session_info == b""
    assert outcome.sensor.fram == bytes(tag.memory[:344])


class UnreachableScanner:
    def __init__(self) -> None:
        self.addresses: list[str] = []

    async def rescan(self, address: str) -> bool:
        self.addresses.append(address)
        raise TransportConnectError("No Bluetooth adapters found.")


class CancelsOnEnableStreaming(EmulatedTag):
    async def custom_command(self, code: int, parameters: bytes) -> bytes:
        if code == 0xA1 and parameters[:1] == b"\x1e":
            self.calls.append(("custom_command", code, bytes(parameters)))
            raise SessionCanceledError("Session canceled by user")
        return await super().custom_command(code, parameters)


class TruncatedReadBlocksTag(EmulatedTag):
    async def custom_command(self, code: int, parameters: bytes) -> bytes:
        output = await super().custom_command(code, parameters)
        if code == 0xA1 and parameters[:1] == b"\x21":
            return output[:-4]
        return output


class BrokenAfterFirstChunk(EmulatedTag):
    async def read_multiple_blocks(self, block_range):
        if block_range.start >= 3:
            self.calls.append(("read_multiple_blocks", block_range))
            raise TagCommandError(0x10)
        return await super().read_multiple_blocks(block_range)


def _tag(cls, patch_info: str, **kwargs) -> EmulatedTag:
    return cls(identifier=UID[::-1], patch_info=bytes.fromhex(patch_info), fram=make_fram(), **kwargs)


@pytest.mark.asyncio
async def test_enable_streaming_keeps_code_when_rescan_fails(make_tag, caplog) -> None:
    tag = make_tag(LIBRE2_EU_PATCH_INFO, streaming_address="5C:02:72:11:22:33")
    scanner = UnreachableScanner()
    settings = Settings(active_sensor_streaming_unlock_code=0x12345678)
    context = _context(tag, TaskRequest.ENABLE_STREAMING, settings=settings, scanner=scanner)
    caplog.set_level(logging.WARNING, logger="cgmctl.core.session")

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.succeeded
    assert scanner.addresses == ["5C:02:72:11:22:33"]
    assert settings.active_sensor_address == "5C:02:72:11:22:33"
    assert outcome.sensor.streaming_unlock_code == 0x12345678
    assert tag.streaming_unlock_code == 0x12345678
    assert "re-scan for 5C:02:72:11:22:33 failed" in caplog.text
    assert "command error" not in caplog.text


@pytest.mark.asyncio
async def test_enable_streaming_canceled_restores_unlock_code() -> None:
    tag = _tag(CancelsOnEnableStreaming, LIBRE2_EU_PATCH_INFO, streaming_address="5C:02:72:11:22:33")
    scanner = FakeScanner()
    settings = Settings(active_sensor_streaming_unlock_code=0x12345678)
    context = _context(tag, TaskRequest.ENABLE_STREAMING, settings=settings, scanner=scanner)
    context.sensor.streaming_unlock_code = 1

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.canceled
    assert outcome.sensor.streaming_unlock_code == 1
    assert settings.active_sensor_address == ""
    assert scanner.addresses == []


@pytest.mark.asyncio
async def test_enable_streaming_clears_task_once(make_tag, caplog) -> None:
    tag = make_tag(LIBRE2_EU_PATCH_INFO, streaming_address="5C:02:72:11:22:33")
    settings = Settings(active_sensor_streaming_unlock_code=0x12345678)
    context = _context(tag, TaskRequest.ENABLE_STREAMING, settings=settings, scanner=FakeScanner())
    caplog.set_level(logging.DEBUG, logger="cgmctl.core.context")

    await SessionOrchestrator(context).handle_tag()

    assert caplog.text.count("task 'enable-streaming' completed") == 1
    assert context.task_request is None


@pytest.mark.asyncio
async def test_truncated_generation_2_reads_end_in_error_outcome() -> None:
    tag = _tag(TruncatedReadBlocksTag, LIBRE2_US_PATCH_INFO)
    context = _context(tag, TaskRequest.READ_FRAM)

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.error is not None
    assert outcome.error.startswith("reading blocks error at block #0")
    assert outcome.sensor.fram == b""
    read_blocks = [params for code, params in _custom_commands(tag) if params[:1] == b"\x21"]
    assert len(read_blocks) == 6
    assert tag.invalidated


@pytest.mark.asyncio
async def test_failed_read_logs_partial_buffer(caplog) -> None:
    tag = _tag(BrokenAfterFirstChunk, LIBRE1_PATCH_INFO)
    context = _context(tag)
    caplog.set_level(logging.INFO, logger="cgmctl.core.session")

    outcome = await SessionOrchestrator(context).handle_tag()

    assert outcome.error is not None
    assert outcome.error.startswith("read error at blocks")
    assert "NFC: 24 bytes read before the failure:" in caplog.text
    assert "#002  " in caplog.text
