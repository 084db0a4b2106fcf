"""Stable public API for building tooling on top of cgmctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from pathlib import Path

from cgmctl.core.cipher import DEFAULT_SEED
from cgmctl.core.config import AppConfig, DecodingConfig
from cgmctl.core.errors import (
    CgmctlError,
    CommandNotSupportedError,
    ConfigLoadError,
    ConfigValidationError,
    CustomCommandError,
    DecodingServiceError,
    HandshakeError,
    NFCError,
    ReadBlocksError,
    ReadError,
    SessionCanceledError,
    TagCommandError,
    TransportConnectError,
    TransportError,
    TransportTimeoutError,
    WriteError,
)
from cgmctl.core.model import (
    BlockRange,
    NFCCommand,
    Sensor,
    SensorState,
    SensorType,
    SessionOutcome,
    Settings,
    Subcommand,
    SystemInfo,
    TaskRequest,
)
from cgmctl.core.service import SensorService
from cgmctl.transports.base import DecodingService, Haptics, PeripheralScanner, TagTransport
from cgmctl.transports.emulated import EmulatedTag, load_tag_image

__all__ = [
    "CgmctlError",
    "CommandNotSupportedError",
    "ConfigLoadError",
    "ConfigValidationError",
    "CustomCommandError",
    "DecodingServiceError",
    "HandshakeError",
    "NFCError",
    "ReadBlocksError",
    "ReadError",
    "SessionCanceledError",
    "TagCommandError",
    "TransportConnectError",
    "TransportError",
    "TransportTimeoutError",
    "WriteError",
    "AppConfig",
    "DecodingConfig",
    "BlockRange",
    "NFCCommand",
    "Sensor",
    "SensorState",
    "SensorType",
    "SessionOutcome",
    "Settings",
    "Subcommand",
    "SystemInfo",
    "TaskRequest",
    "DecodingService",
    "Haptics",
    "PeripheralScanner",
    "TagTransport",
    "EmulatedTag",
    "load_tag_image",
    "Client",
]


class Client:
    """Public client for interacting with cgmctl core capabilities.

    A `Client` wraps configuration and state loading, the tag session
    orchestrator and the command catalog behind a stable API intended for
    third-party tools (GUI/TUI/services/scripts).
    """

    def __init__(
        self,
        *,
        config: AppConfig | None = None,
        state_file: Path | None = None,
        decoder: DecodingService | None = None,
        scanner: PeripheralScanner | None = None,
        haptics: Haptics | None = None,
    ) -> None:
        self._service = SensorService(
            config=config,
            state_file=state_file,
            decoder=decoder,
            scanner=scanner,
            haptics=haptics,
        )

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    @property
    def runtime_warnings(self) -> tuple[str, ...]:
        return self._service.runtime_warnings

    @property
    def settings(self) -> Settings:
        return self._service.current_settings()

    def run_task(self, transport: TagTransport, task: TaskRequest | None = None) -> SessionOutcome:
        """Run one tag encounter synchronously."""
        return self._service.run_task(transport, task)

    async def handle_tag(self, transport: TagTransport, task: TaskRequest | None = None) -> SessionOutcome:
        """Run one tag encounter inside a caller-owned event loop."""
        return await self._service.handle(transport, task)

    def run_image(self, image: Path, task: TaskRequest | None = None) -> SessionOutcome:
        return self._service.run_image(image, task)

    def build_command(
        self,
        name: str,
        uid: bytes,
        *,
        patch_info: bytes = b"",
        unlock_code: int | None = None,
        sensor_type: SensorType | None = None,
    ) -> NFCCommand:
        return self._service.build_command(
            name,
            uid,
            patch_info=patch_info,
            unlock_code=unlock_code,
            sensor_type=sensor_type,
        )

    def unlock_suffix(self, uid: bytes, code: int, seed: int = DEFAULT_SEED) -> bytes:
        return self._service.unlock_suffix(uid, code, seed)

    def describe_status(self, code: int) -> str:
        return self._service.describe_status(code)
