"""Domain-specific errors for deckctl."""

from __future__ import annotations

from deckctl.core.model import Command, ErrorCode


def describe_command(command: int) -> str:
    try:
        return f"{Command(command).name}(0x{command:02X})"
    except ValueError:
        return f"0x{command:02X}"


def describe_error(code: int) -> str:
    try:
        return f"{ErrorCode(code).name}(0x{code:02X})"
    except ValueError:
        return f"0x{code:02X}"


class DeckctlError(Exception):
    """Base error for deckctl."""


class ProfileValidationError(DeckctlError):
    """Raised when a profile file does not conform to schema or semantics."""


class ProfileLoadError(DeckctlError):
    """Raised when loading profile sources fails."""


class DeviceSelectionError(DeckctlError):
    """Raised when scanning cannot resolve a target device."""


class ApplicationError(DeckctlError):
    """Raised when an operation is rejected locally, without touching the device."""


class TransportError(DeckctlError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on BLE connect failures."""


class TransportSendError(TransportError):
    """Raised when a GATT write or read fails."""


class TransportTimeoutError(TransportError):
    """Raised when the transport gives up waiting."""


class SessionClosedError(TransportError):
    """Raised when an exchange outlives the session it was started on."""


class LinkLostError(TransportError):
    """Raised when the transport reports the link went away mid-operation."""


class ProtocolError(DeckctlError):
    """Base error for malformed or missing replies."""


class DecodeError(ProtocolError):
    """Raised when a byte buffer cannot be decoded into a frame."""


class BadMagic(DecodeError):
    """No magic marker in the buffer."""


class TooShort(DecodeError):
    """Fewer bytes than the smallest frame after the marker."""


class TruncatedBody(DecodeError):
    """Declared body length exceeds the available bytes."""


class ChecksumMismatch(DecodeError):
    """Trailing byte does not match the XOR of the frame."""


class NoResponse(ProtocolError):
    """Raised when the device stays silent after the single read retry."""


class DeviceError(DeckctlError):
    """Raised when the device answers with a non-NONE error code."""

    def __init__(self, command: int, error_code: int) -> None:
        self.command = command
        self.error_code = error_code
        super().__init__(
            f"Device rejected {describe_command(command)} with error {describe_error(error_code)}"
        )


class StageError(DeckctlError):
    """Base error for a lifecycle stage that could not complete."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"{stage}: {message}")


class StageTimeout(StageError):
    def __init__(self, stage: str, attempts: int, timeout_s: float) -> None:
        self.attempts = attempts
        self.timeout_s = timeout_s
        super().__init__(
            stage,
            f"timed out after {attempts} attempt(s) of {timeout_s:g}s",
        )


class RequiredEndpointMissing(StageError):
    def __init__(self, stage: str, endpoint: str) -> None:
        self.endpoint = endpoint
        super().__init__(stage, f"required endpoint {endpoint} not found")


class CommunicationTestError(StageError):
    """Raised when the link is up but the device does not answer GET_INFO."""

    def __init__(self, stage: str, cause: DeckctlError) -> None:
        self.cause = cause
        super().__init__(stage, f"cannot communicate with device ({cause})")
