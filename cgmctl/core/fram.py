"""Generation-0 FRAM layout helpers: section CRCs and the images written by reset/prolong.

The first 43 blocks hold three CRC-protected sections. Each starts with a
little-endian CRC16 of the rest of the section.
"""

from __future__ import annotations

from cgmctl.core.model import SensorState

FRAM_BLOCKS = 43
FRAM_SIZE = FRAM_BLOCKS * 8
FRAM_RAW_ADDRESS = 0xF860

HEADER = (0, 24)
BODY = (24, 296)
FOOTER = (320, 24)

STATE_OFFSET = 4
TREND_INDEX_OFFSET = 26
AGE_OFFSET = 316
MAX_LIFE_OFFSET = 326


def crc16(data: bytes) -> int:
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0x8408
            else:
                crc >>= 1
    reversed_crc = 0
    for _ in range(16):
        reversed_crc = (reversed_crc << 1) | (crc & 1)
        crc >>= 1
    return reversed_crc


def section_crc_ok(fram: bytes, section: tuple[int, int]) -> bool:
    start, length = section
    stored = int.from_bytes(fram[start : start + 2], "little")
    return stored == crc16(fram[start + 2 : start + length])


def _with_section_crc(image: bytearray, section: tuple[int, int]) -> None:
    start, length = section
    image[start : start + 2] = crc16(bytes(image[start + 2 : start + length])).to_bytes(2, "little")


def _checked_copy(fram: bytes) -> bytearray:
    if len(fram) < FRAM_SIZE:
        raise ValueError(f"FRAM image needs {FRAM_SIZE} bytes, got {len(fram)}")
    return bytearray(fram[:FRAM_SIZE])


def reset_image(fram: bytes) -> bytes:
    """Header marked not activated, trend/history/age cleared, CRCs recomputed."""
    image = _checked_copy(fram)
    image[STATE_OFFSET] = SensorState.NOT_ACTIVATED
    image[TREND_INDEX_OFFSET : AGE_OFFSET + 2] = bytes(AGE_OFFSET + 2 - TREND_INDEX_OFFSET)
    _with_section_crc(image, HEADER)
    _with_section_crc(image, BODY)
    return bytes(image)


def prolong_image(fram: bytes) -> bytes:
    """The footer with the maximum life raised to 0xFFFF minutes."""
    image = _checked_copy(fram)
    image[MAX_LIFE_OFFSET : MAX_LIFE_OFFSET + 2] = b"\xff\xff"
    _with_section_crc(image, FOOTER)
    start, length = FOOTER
    return bytes(image[start : start + length])


def find_crc_sections(data: bytes, limit: int = 89 * 8 + 34 + 10) -> list[tuple[int, int]]:
    """Scan for consecutive (offset, length) runs whose leading word is their CRC16."""
    sections: list[tuple[int, int]] = []
    end = min(limit, len(data))
    offset = 0
    i = offset + 2
    while offset < end - 3 and i < end - 1:
        if int.from_bytes(data[offset : offset + 2], "little") == crc16(data[offset + 2 : i + 2]):
            sections.append((offset, i + 2 - offset))
            offset = i + 2
            i = offset
        i += 2
    return sections
