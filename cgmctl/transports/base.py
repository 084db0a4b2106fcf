"""Transport interfaces consumed by the protocol core."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from cgmctl.core.model import BlockRange, Gen2Response, SystemInfo


class TagTransport(Protocol):
    """One connected ISO 15693 tag.

    Failing calls raise `TagCommandError` carrying the ISO 15693 status, or
    `SessionCanceledError` when the user dismissed the session.
    """

    identifier: bytes
    ic_manufacturer_code: int
    ic_serial_number: bytes

    async def connect(self) -> None: ...

    async def custom_command(self, code: int, parameters: bytes) -> bytes: ...

    async def read_multiple_blocks(self, block_range: BlockRange) -> list[bytes]: ...

    async def write_multiple_blocks(self, block_range: BlockRange, blocks: Sequence[bytes]) -> None: ...

    async def system_info(self) -> SystemInfo: ...

    def invalidate(self, message: str | None = None) -> None:
        """Tear down the proximity session, optionally showing an error message."""


class DecodingService(Protocol):
    async def nfc_auth(self, patch_uid: bytes, auth_data: bytes) -> Gen2Response: ...

    async def nfc_data(self, patch_uid: bytes, auth_data: bytes) -> Gen2Response: ...

    async def nfc_data_algorithm(
        self,
        p1: int,
        auth_data: bytes,
        content: bytes,
        patch_uid: bytes,
        patch_info: bytes,
    ) -> Gen2Response: ...


class PeripheralScanner(Protocol):
    async def rescan(self, address: str) -> bool:
        """Look for the streaming peripheral; True when it is advertising."""


class Haptics(Protocol):
    def pop(self) -> None:
        """Short pulse between retries."""

    def vibrate(self) -> None:
        """Long pulse when a task completes."""


class NullHaptics:
    def pop(self) -> None:
        return None

    def vibrate(self) -> None:
        return None
