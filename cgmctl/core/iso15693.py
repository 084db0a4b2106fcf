"""ISO 15693 response status classification."""

from __future__ import annotations

from enum import IntEnum


class Iso15693Status(IntEnum):
    NONE = 0x00
    COMMAND_NOT_SUPPORTED = 0x01
    COMMAND_NOT_RECOGNIZED = 0x02
    OPTION_NOT_SUPPORTED = 0x03
    UNKNOWN = 0x0F
    BLOCK_NOT_AVAILABLE = 0x10
    BLOCK_ALREADY_LOCKED = 0x11
    CONTENT_CANNOT_BE_CHANGED = 0x12

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    Iso15693Status.NONE: "none",
    Iso15693Status.COMMAND_NOT_SUPPORTED: "command not supported",
    Iso15693Status.COMMAND_NOT_RECOGNIZED: "command not recognized (e.g. format error)",
    Iso15693Status.OPTION_NOT_SUPPORTED: "option not supported",
    Iso15693Status.UNKNOWN: "unknown",
    Iso15693Status.BLOCK_NOT_AVAILABLE: "block not available (out of range, doesn't exist)",
    Iso15693Status.BLOCK_ALREADY_LOCKED: "block already locked -- can't be locked again",
    Iso15693Status.CONTENT_CANNOT_BE_CHANGED: "block locked -- content cannot be changed",
}

# Statuses that will not change by asking again.
_PERMANENT = frozenset(
    {
        Iso15693Status.COMMAND_NOT_SUPPORTED,
        Iso15693Status.COMMAND_NOT_RECOGNIZED,
        Iso15693Status.OPTION_NOT_SUPPORTED,
        Iso15693Status.BLOCK_NOT_AVAILABLE,
        Iso15693Status.BLOCK_ALREADY_LOCKED,
        Iso15693Status.CONTENT_CANNOT_BE_CHANGED,
    }
)


def classify(code: int) -> Iso15693Status | None:
    try:
        return Iso15693Status(code)
    except ValueError:
        return None


def describe(code: int) -> str:
    status = classify(code)
    if status is None:
        return f"unknown code 0x{code & 0xFF:02x}"
    return status.description


def is_retryable(code: int) -> bool:
    return classify(code) not in _PERMANENT


def iso15693_code(error: BaseException) -> int:
    """Return the ISO 15693 status carried by a transport or protocol error, 0 if none."""
    for attribute in ("code", "iso_code"):
        value = getattr(error, attribute, None)
        if isinstance(value, int):
            return value
    return 0


def iso15693_description(error: BaseException) -> str:
    return describe(iso15693_code(error))


def format_fault(error: BaseException) -> str:
    code = iso15693_code(error)
    return f"{error} (ISO 15693 error 0x{code:02x}: {describe(code)})"
