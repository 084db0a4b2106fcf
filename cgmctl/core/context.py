"""Per-encounter session state shared by the block I/O layer and the orchestrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from cgmctl.core.model import Sensor, Settings, SystemInfo, TaskRequest
from cgmctl.transports.base import DecodingService, Haptics, NullHaptics, PeripheralScanner, TagTransport

LOGGER = logging.getLogger(__name__)

DEFAULT_RETRIES = 5
DEFAULT_RETRY_DELAY_S = 0.25


@dataclass
class SessionContext:
    """Everything one tag encounter owns; created per encounter, never shared."""

    transport: TagTransport
    sensor: Sensor
    settings: Settings = field(default_factory=Settings)
    task_request: TaskRequest | None = None
    haptics: Haptics = field(default_factory=NullHaptics)
    decoder: DecodingService | None = None
    scanner: PeripheralScanner | None = None
    retries: int = DEFAULT_RETRIES
    retry_delay_s: float = DEFAULT_RETRY_DELAY_S
    debug_level: int = 0
    system_info: SystemInfo | None = None
    security_challenge: bytes = b""
    auth_context: int = 0
    session_info: bytes = b""
    invalidated: bool = False
    error_message: str | None = None

    @property
    def security_generation(self) -> int:
        return self.sensor.security_generation

    def invalidate(self, message: str | None = None) -> None:
        if self.invalidated:
            return
        self.invalidated = True
        self.error_message = message
        if message:
            LOGGER.info("NFC: invalidating session: %s", message)
        self.transport.invalidate(message)

    def complete_task(self) -> None:
        """Clear the pending task; later calls in the same encounter do nothing."""
        if self.task_request is None:
            return
        LOGGER.debug("NFC: task '%s' completed", self.task_request.value)
        self.task_request = None
