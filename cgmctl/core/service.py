"""Service layer used by the CLI and the public API."""

from __future__ import annotations

import asyncio
import importlib.util
import logging
from collections.abc import Callable
from pathlib import Path

from cgmctl.core.catalog import activation_command, lock_command, nfc_command, read_raw_command, unlock_command
from cgmctl.core.cipher import DEFAULT_SEED, useful_function
from cgmctl.core.config import AppConfig, load_config, load_state, save_state
from cgmctl.core.context import SessionContext
from cgmctl.core.detection import apply_patch_info
from cgmctl.core.iso15693 import describe
from cgmctl.core.model import NFCCommand, Sensor, SensorType, SessionOutcome, Settings, Subcommand, TaskRequest
from cgmctl.core.session import SessionOrchestrator
from cgmctl.transports.base import DecodingService, Haptics, NullHaptics, PeripheralScanner, TagTransport
from cgmctl.transports.ble_rescan import BleakPeripheralScanner
from cgmctl.transports.decoding_http import HTTPDecodingService
from cgmctl.transports.emulated import load_tag_image

LOGGER = logging.getLogger(__name__)

_BACKDOOR_COMMANDS: dict[str, Callable[[Sensor], NFCCommand]] = {
    "activation": activation_command,
    "lock": lock_command,
    "raw-unlock": unlock_command,
    "read-raw": read_raw_command,
}

_TYPE_GENERATIONS = {
    SensorType.GEN1: 0,
    SensorType.PRO_H: 0,
    SensorType.GEN3: 3,
}


def subcommand_names() -> tuple[str, ...]:
    named = tuple(
        member.name.lower().replace("_", "-") for member in Subcommand if not member.name.startswith("UNKNOWN")
    )
    return named + tuple(_BACKDOOR_COMMANDS)


class SensorService:
    def __init__(
        self,
        *,
        config: AppConfig | None = None,
        state_file: Path | None = None,
        decoder: DecodingService | None = None,
        scanner: PeripheralScanner | None = None,
        haptics: Haptics | None = None,
    ) -> None:
        self.config = config or load_config()
        self.state_file = state_file
        self.settings = load_state(state_file)
        self.settings.active_sensor_streaming_unlock_code = self.config.streaming_unlock_code
        if decoder is None and self.config.decoding is not None:
            decoder = HTTPDecodingService(self.config.decoding)
        self.decoder = decoder
        self.scanner = scanner or BleakPeripheralScanner(timeout_s=self.config.rescan_timeout_s)
        self.haptics = haptics or NullHaptics()
        self.sensors: dict[bytes, Sensor] = {}
        self.load_warnings = self.config.warnings
        self.runtime_warnings = _runtime_warnings()

    def sensor_for(self, transport: TagTransport) -> Sensor:
        """Reuse the sensor of an earlier encounter while the UID stays the same."""
        uid = bytes(transport.identifier)[::-1]
        sensor = self.sensors.get(uid)
        if sensor is None:
            sensor = Sensor()
            sensor.streaming_unlock_code = self.settings.active_sensor_streaming_unlock_code
            self.sensors[uid] = sensor
        return sensor

    async def handle(self, transport: TagTransport, task: TaskRequest | None) -> SessionOutcome:
        context = SessionContext(
            transport=transport,
            sensor=self.sensor_for(transport),
            settings=self.settings,
            task_request=task,
            haptics=self.haptics,
            decoder=self.decoder,
            scanner=self.scanner,
            retries=self.config.retries,
            retry_delay_s=self.config.retry_delay_s,
            debug_level=self.config.debug_level,
        )
        outcome = await SessionOrchestrator(context).handle_tag()
        if not outcome.canceled:
            save_state(self.settings, self.state_file)
        return outcome

    def run_task(self, transport: TagTransport, task: TaskRequest | None) -> SessionOutcome:
        return asyncio.run(self.handle(transport, task))

    def run_image(self, image: Path, task: TaskRequest | None) -> SessionOutcome:
        tag = load_tag_image(image)
        LOGGER.info("Loaded emulated tag %s from %s", tag.identifier.hex(), image)
        return self.run_task(tag, task)

    def build_command(
        self,
        name: str,
        uid: bytes,
        *,
        patch_info: bytes = b"",
        unlock_code: int | None = None,
        sensor_type: SensorType | None = None,
    ) -> NFCCommand:
        sensor = Sensor()
        sensor.uid = uid
        apply_patch_info(sensor, patch_info)
        if sensor_type is not None and sensor_type is not sensor.type:
            sensor.type = sensor_type
            sensor.security_generation = _TYPE_GENERATIONS.get(sensor_type, 1)
        if unlock_code is not None:
            sensor.streaming_unlock_code = unlock_code

        builder = _BACKDOOR_COMMANDS.get(name)
        if builder is not None:
            return builder(sensor)
        return nfc_command(sensor, _parse_subcommand(name))

    @staticmethod
    def unlock_suffix(uid: bytes, code: int, seed: int = DEFAULT_SEED) -> bytes:
        return useful_function(uid, code, seed)

    @staticmethod
    def describe_status(code: int) -> str:
        return describe(code)

    def current_settings(self) -> Settings:
        return self.settings


def _parse_subcommand(name: str) -> Subcommand:
    normalized = name.strip().lower()
    for member in Subcommand:
        if member.name.lower().replace("_", "-") == normalized:
            return member
    try:
        value = int(normalized, 16)
    except ValueError:
        raise ValueError(
            f"Unknown subcommand '{name}'. Use one of {', '.join(subcommand_names())} or a hex code"
        ) from None
    if not 0 <= value <= 0xFF:
        raise ValueError(f"Subcommand code must fit in one byte, got {name}")
    return Subcommand(value)


def _runtime_warnings() -> tuple[str, ...]:
    warnings: list[str] = []
    if importlib.util.find_spec("bleak") is None:
        warnings.append("Python runtime missing 'bleak'; BLE re-scan after enable-streaming will fail.")
    return tuple(warnings)
