"""Custom exceptions for the Mi Flora BLE library."""

from typing import Optional


class MiFloraError(Exception):
    """Base exception for all Mi Flora library errors."""

    pass


class OperationTimeout(MiFloraError):
    """Raised when a guarded device operation does not finish before its deadline."""

    def __init__(self, operation: str, timeout_s: float) -> None:
        self.operation = operation
        self.timeout_s = timeout_s
        super().__init__(f"{operation} timed out after {timeout_s:.1f}s")


class ConnectionFailure(MiFloraError):
    """Raised when the transport fails to connect, disconnect or scan."""

    pass


class CharacteristicResolutionError(MiFloraError):
    """Raised when an expected service or characteristic is not available."""

    def __init__(self, message: str, uuid: Optional[str] = None) -> None:
        self.uuid = uuid
        super().__init__(message)


class ReadFailure(MiFloraError):
    """Raised when reading a characteristic fails at the transport level."""

    def __init__(self, message: str, uuid: Optional[str] = None) -> None:
        self.uuid = uuid
        super().__init__(message)


class WriteFailure(MiFloraError):
    """Raised when writing a characteristic fails at the transport level."""

    def __init__(self, message: str, uuid: Optional[str] = None) -> None:
        self.uuid = uuid
        super().__init__(message)


class ModeMismatch(MiFloraError):
    """Raised when the device does not echo back the mode command it was sent."""

    def __init__(self, written: bytes, echoed: bytes, outcome: object = None) -> None:
        self.written = bytes(written)
        self.echoed = bytes(echoed)
        self.outcome = outcome
        echoed_hex = f"0x{self.echoed.hex().upper()}" if self.echoed else "nothing"
        super().__init__(
            f"Failed to change device mode: wrote 0x{self.written.hex().upper()}, "
            f"read back {echoed_hex}"
        )


class DecodeError(MiFloraError):
    """Raised when a payload is too short or malformed to decode."""

    pass
