from __future__ import annotations

import pytest

from cgmctl.core.fram import (
    AGE_OFFSET,
    BODY,
    FOOTER,
    FRAM_SIZE,
    HEADER,
    MAX_LIFE_OFFSET,
    STATE_OFFSET,
    TREND_INDEX_OFFSET,
    crc16,
    find_crc_sections,
    prolong_image,
    reset_image,
    section_crc_ok,
)
from cgmctl.core.model import SensorState


def _fram() -> bytes:
    image = bytearray((i * 7) & 0xFF for i in range(FRAM_SIZE))
    image[STATE_OFFSET] = SensorState.ACTIVE
    return bytes(image)


def test_crc16_check_value() -> None:
    assert crc16(b"123456789") == 0x89F6


def test_reset_image_clears_history_and_fixes_crcs() -> None:
    image = reset_image(_fram())

    assert len(image) == FRAM_SIZE
    assert image[STATE_OFFSET] == SensorState.NOT_ACTIVATED
    assert image[TREND_INDEX_OFFSET : AGE_OFFSET + 2] == bytes(AGE_OFFSET + 2 - TREND_INDEX_OFFSET)
    assert section_crc_ok(image, HEADER)
    assert section_crc_ok(image, BODY)
    assert image[FOOTER[0] :] == _fram()[FOOTER[0] :]


def test_prolong_image_returns_footer_with_max_life() -> None:
    footer = prolong_image(_fram())

    assert len(footer) == FOOTER[1]
    offset = MAX_LIFE_OFFSET - FOOTER[0]
    assert footer[offset : offset + 2] == b"\xff\xff"
    assert section_crc_ok(footer, (0, FOOTER[1]))


def test_short_images_rejected() -> None:
    with pytest.raises(ValueError):
        reset_image(bytes(100))
    with pytest.raises(ValueError):
        prolong_image(bytes(100))


def test_find_crc_sections() -> None:
    section = crc16(b"\x01\x02").to_bytes(2, "little") + b"\x01\x02"
    assert find_crc_sections(section) == [(0, 4)]
    assert find_crc_sections(b"") == []
