"""Sensor identification from patch info, tag identifier and manufacturer code."""

from __future__ import annotations

from cgmctl.core.model import UID_LENGTH, Sensor, SensorType

MANUFACTURER_TEXAS_INSTRUMENTS = 0x07
MANUFACTURER_ABBOTT = 0x7A

_PATCH_TYPES: dict[int, tuple[SensorType, int]] = {
    0xDF: (SensorType.GEN1, 0),
    0xA2: (SensorType.GEN1, 0),
    0x70: (SensorType.PRO_H, 0),
    0x9D: (SensorType.GEN2, 1),
    0xC5: (SensorType.GEN2, 1),
    0xC6: (SensorType.GEN2, 1),
    0x7F: (SensorType.GEN2, 1),
    0x76: (SensorType.GEN2, 2),
    0x2B: (SensorType.GEN2, 2),
    0x2C: (SensorType.GEN2, 2),
    0x2D: (SensorType.GEN2, 2),
    0x2E: (SensorType.GEN2, 2),
}

_FAMILY_DIGITS = {
    SensorType.GEN1: "0",
    SensorType.PRO_H: "1",
    SensorType.GEN2: "3",
}

_SERIAL_ALPHABET = "0123456789ACDEFGHJKLMNPQRTUVWXYZ"


def sensor_type_for(patch_info: bytes) -> tuple[SensorType, int]:
    if not patch_info:
        return SensorType.UNKNOWN, 0
    return _PATCH_TYPES.get(patch_info[0], (SensorType.UNKNOWN, 0))


def apply_patch_info(sensor: Sensor, patch_info: bytes) -> None:
    sensor.patch_info = bytes(patch_info)
    if sensor.type is SensorType.GEN3:
        return
    sensor.type, sensor.security_generation = sensor_type_for(sensor.patch_info)


def apply_manufacturer(sensor: Sensor, manufacturer_code: int) -> None:
    if manufacturer_code == MANUFACTURER_ABBOTT:
        sensor.type = SensorType.GEN3
        sensor.security_generation = 3


def manufacturer_label(manufacturer_code: int) -> str:
    label = f"{manufacturer_code:02x}"
    if manufacturer_code == MANUFACTURER_TEXAS_INSTRUMENTS:
        label += " (Texas Instruments)"
    elif manufacturer_code == MANUFACTURER_ABBOTT:
        label += " (Abbott Diabetes Care)"
    return label


def firmware_label(identifier: bytes) -> str:
    marker = identifier[2] if len(identifier) > 2 else None
    if marker == 0xA0:
        return "RF430TAL152H Libre 1 A0 firmware"
    if marker == 0xA4:
        return "RF430TAL160H Libre 2 A4 firmware"
    if marker == 0x00:
        return "unknown Libre 3 firmware"
    return "RF430 unknown firmware"


def serial_number(sensor: Sensor) -> str:
    """Printed serial number, derived from the 48 low bits of the UID."""
    family = _FAMILY_DIGITS.get(sensor.type)
    if family is None or len(sensor.uid) != UID_LENGTH:
        return ""
    b = sensor.uid[::-1][2:]
    groups = [
        b[0] >> 3,
        (b[0] << 2) + (b[1] >> 6),
        b[1] >> 1,
        (b[1] << 4) + (b[2] >> 4),
        (b[2] << 1) + (b[3] >> 7),
        b[3] >> 2,
        (b[3] << 3) + (b[4] >> 5),
        b[4],
        b[5] >> 3,
        b[5] << 2,
    ]
    return family + "".join(_SERIAL_ALPHABET[group & 0x1F] for group in groups)
