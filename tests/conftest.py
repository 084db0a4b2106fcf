from __future__ import annotations

from collections.abc import Callable

import pytest

from cgmctl.core.context import SessionContext
from cgmctl.core.detection import apply_patch_info
from cgmctl.core.fram import FRAM_SIZE, STATE_OFFSET
from cgmctl.core.model import Gen2Response, Sensor, SensorState, TaskRequest
from cgmctl.transports.emulated import EmulatedTag

LIBRE1_PATCH_INFO = "df0000080000"
LIBRE2_EU_PATCH_INFO = "9d083001712b"
LIBRE2_US_PATCH_INFO = "760830017c2b"
UID = bytes.fromhex("2fe7b10000a407e0")


def make_fram(state: SensorState = SensorState.ACTIVE) -> bytes:
    image = bytearray((i * 7) & 0xFF for i in range(FRAM_SIZE))
    image[STATE_OFFSET] = state
    return bytes(image)


class CountingHaptics:
    def __init__(self) -> None:
        self.pops = 0
        self.vibrations = 0

    def pop(self) -> None:
        self.pops += 1

    def vibrate(self) -> None:
        self.vibrations += 1


class FakeScanner:
    def __init__(self, found: bool = True) -> None:
        self.found = found
        self.addresses: list[str] = []

    async def rescan(self, address: str) -> bool:
        self.addresses.append(address)
        return self.found


class FakeDecoder:
    def __init__(self, *, p1: int = 7, authenticated: bytes = b"", decoded: bytes = b"") -> None:
        self.p1 = p1
        self.authenticated = authenticated or bytes.fromhex("02a1071f") + bytes(8)
        self.decoded = decoded
        self.auth_calls: list[tuple[bytes, bytes]] = []
        self.algorithm_calls: list[tuple[int, bytes, bytes, bytes, bytes]] = []

    async def nfc_auth(self, patch_uid: bytes, auth_data: bytes) -> Gen2Response:
        self.auth_calls.append((patch_uid, auth_data))
        return Gen2Response(p1=0, data=b"")

    async def nfc_data(self, patch_uid: bytes, auth_data: bytes) -> Gen2Response:
        return Gen2Response(p1=self.p1, data=self.authenticated)

    async def nfc_data_algorithm(
        self,
        p1: int,
        auth_data: bytes,
        content: bytes,
        patch_uid: bytes,
        patch_info: bytes,
    ) -> Gen2Response:
        self.algorithm_calls.append((p1, auth_data, content, patch_uid, patch_info))
        return Gen2Response(p1=p1, data=self.decoded)


@pytest.fixture
def make_tag() -> Callable[..., EmulatedTag]:
    def _make(
        patch_info: str = LIBRE1_PATCH_INFO,
        *,
        state: SensorState = SensorState.ACTIVE,
        total_blocks: int = 244,
        **kwargs,
    ) -> EmulatedTag:
        return EmulatedTag(
            identifier=UID[::-1],
            patch_info=bytes.fromhex(patch_info),
            fram=make_fram(state),
            total_blocks=total_blocks,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_context() -> Callable[..., SessionContext]:
    """Context around a tag whose sensor is already identified, as after the handshake."""

    def _make(tag: EmulatedTag, task: TaskRequest | None = None, **kwargs) -> SessionContext:
        sensor = Sensor()
        sensor.uid = tag.uid
        apply_patch_info(sensor, tag.patch_info)
        if tag.security_generation == 3:
            sensor.type, sensor.security_generation = tag.type, 3
        kwargs.setdefault("haptics", CountingHaptics())
        kwargs.setdefault("retry_delay_s", 0)
        return SessionContext(transport=tag, sensor=sensor, task_request=task, **kwargs)

    return _make
