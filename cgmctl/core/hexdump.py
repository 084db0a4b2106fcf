"""Hex dump formatting for protocol logs."""

from __future__ import annotations

from cgmctl.core.model import BLOCK_SIZE


def hex_dump(
    data: bytes,
    header: str,
    *,
    address: int | None = None,
    starting_block: int | None = None,
) -> str:
    """One line per 8 bytes, prefixed by the block index or by the raw address."""
    lines = [header]
    for offset in range(0, len(data), BLOCK_SIZE):
        chunk = data[offset : offset + BLOCK_SIZE]
        if address is not None:
            label = f"{address + offset:04X}"
        else:
            label = f"#{(starting_block or 0) + offset // BLOCK_SIZE:03x}"
        printable = "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in chunk)
        lines.append(f"{label}  {chunk.hex(' '):<23}  {printable}")
    return "\n".join(lines)
