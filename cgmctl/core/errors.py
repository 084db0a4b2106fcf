"""Domain-specific errors for cgmctl."""

from __future__ import annotations


class CgmctlError(Exception):
    """Base error for cgmctl."""


class ConfigValidationError(CgmctlError):
    """Raised when a config, state or tag image file does not conform to schema."""


class ConfigLoadError(CgmctlError):
    """Raised when reading a config, state or tag image file fails."""


class SessionCanceledError(CgmctlError):
    """Raised by a transport when the user cancels the proximity session."""


class HandshakeError(CgmctlError):
    """Raised when tag metadata cannot be acquired within the retry ceiling."""


class NFCError(CgmctlError):
    """Base protocol-level error.

    `partial` holds whatever was reassembled before the failure and `start`
    the first block (or raw address) of the failed operation.
    """

    default_message = "nfc error"

    def __init__(
        self,
        message: str | None = None,
        *,
        iso_code: int = 0,
        start: int = 0,
        partial: bytes = b"",
    ) -> None:
        super().__init__(message or self.default_message)
        self.iso_code = iso_code
        self.start = start
        self.partial = partial


class CommandNotSupportedError(NFCError):
    default_message = "command not supported"


class CustomCommandError(NFCError):
    default_message = "custom command error"


class ReadError(NFCError):
    default_message = "read error"


class ReadBlocksError(NFCError):
    default_message = "reading blocks error"


class WriteError(NFCError):
    default_message = "write error"


class TransportError(CgmctlError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised when the tag or a peripheral cannot be connected."""


class TransportTimeoutError(TransportError):
    """Raised when a transport call times out."""


class TagCommandError(TransportError):
    """Raised by a tag transport when a command fails with an ISO 15693 status."""

    def __init__(self, code: int, message: str | None = None) -> None:
        super().__init__(message or f"tag responded with error 0x{code:02x}")
        self.code = code


class TagResponseError(TransportError):
    """Raised when a tag reply does not carry the number of blocks requested."""


class DecodingServiceError(CgmctlError):
    """Raised when the remote decoding service is unreachable or replies badly."""
