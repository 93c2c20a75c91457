"""Domain-specific errors for idmctl."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCode(str, Enum):
    DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    READ_TIMEOUT = "READ_TIMEOUT"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    DEVICE_BUSY = "DEVICE_BUSY"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class ErrorCause:
    """Diagnostic snapshot of a wrapped exception and its own cause chain."""

    type_name: str
    message: str
    cause: ErrorCause | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorCause:
        inner = exc.__cause__ or exc.__context__
        return cls(
            type_name=type(exc).__name__,
            message=str(exc),
            cause=cls.from_exception(inner) if inner is not None else None,
        )

    def describe(self) -> str:
        text = f"{self.type_name}: {self.message}"
        if self.cause is not None:
            text = f"{text} <- {self.cause.describe()}"
        return text


class IdmctlError(Exception):
    """Base error for idmctl."""


class DeviceTableError(IdmctlError):
    """Raised when a device table file does not conform to schema or semantics."""


class DeviceTableLoadError(IdmctlError):
    """Raised when reading device table sources fails."""


class NFCError(IdmctlError):
    """Reader failure tagged with exactly one ErrorCode."""

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        cause: BaseException | ErrorCause | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if isinstance(cause, BaseException):
            cause = ErrorCause.from_exception(cause)
        self.cause: ErrorCause | None = cause

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code.value})"


class DeviceNotFoundError(NFCError):
    code = ErrorCode.DEVICE_NOT_FOUND


class ConnectionFailedError(NFCError):
    code = ErrorCode.CONNECTION_FAILED


class ReadTimeoutError(NFCError):
    code = ErrorCode.READ_TIMEOUT


class InvalidResponseError(NFCError):
    code = ErrorCode.INVALID_RESPONSE


class DeviceBusyError(NFCError):
    code = ErrorCode.DEVICE_BUSY


class PermissionDeniedError(NFCError):
    code = ErrorCode.PERMISSION_DENIED


class UnknownNFCError(NFCError):
    code = ErrorCode.UNKNOWN_ERROR


_ERRORS_BY_CODE: dict[ErrorCode, type[NFCError]] = {
    cls.code: cls
    for cls in (
        DeviceNotFoundError,
        ConnectionFailedError,
        ReadTimeoutError,
        InvalidResponseError,
        DeviceBusyError,
        PermissionDeniedError,
        UnknownNFCError,
    )
}


def make_error(
    code: ErrorCode,
    message: str,
    cause: BaseException | ErrorCause | None = None,
) -> NFCError:
    return _ERRORS_BY_CODE[code](message, cause=cause)


class TransportError(IdmctlError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised when opening, configuring or claiming a device fails."""


class TransportSendError(TransportError):
    """Raised when a bulk transfer fails."""


class TransportTimeoutError(TransportError):
    """Raised when a USB call does not complete in time."""


class TransportPermissionError(TransportError):
    """Raised when the operating system denies access to the device."""
