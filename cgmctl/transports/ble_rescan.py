"""BLE re-scan hook: look for the peripheral a sensor starts advertising after enable-streaming."""

from __future__ import annotations

import logging

from cgmctl.core.errors import TransportConnectError, TransportTimeoutError

LOGGER = logging.getLogger(__name__)


class BleakPeripheralScanner:
    def __init__(self, *, timeout_s: float = 10.0) -> None:
        self.timeout_s = timeout_s

    async def rescan(self, address: str) -> bool:
        try:
            from bleak import BleakScanner  # type: ignore
        except Exception as exc:
            raise TransportConnectError(
                "BLE re-scan requires 'bleak'. Install dependency and retry."
            ) from exc

        LOGGER.info("BLE: scanning for %s (timeout %.1fs)", address, self.timeout_s)
        try:
            device = await BleakScanner.find_device_by_address(address, timeout=self.timeout_s)
        except TimeoutError as exc:
            raise TransportTimeoutError(f"BLE scan timed out looking for {address}") from exc
        except Exception as exc:
            raise TransportConnectError(f"BLE scan failed: {exc}") from exc

        if device is None:
            LOGGER.info("BLE: %s not found", address)
            return False
        LOGGER.info("BLE: found %s (%s)", address, getattr(device, "name", None) or "unnamed")
        return True
