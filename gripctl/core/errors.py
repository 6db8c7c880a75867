"""Domain-specific errors for gripctl."""


class GripctlError(Exception):
    """Base error for gripctl."""


class DescriptorValidationError(GripctlError):
    """Raised when a device descriptor does not conform to schema or semantics."""


class DescriptorLoadError(GripctlError):
    """Raised when loading descriptor sources fails."""


class DeviceSelectionError(GripctlError):
    """Raised when device matching cannot resolve a single target."""


class DeviceDiscoveryError(GripctlError):
    """Raised when the BLE scan fails."""


class NotConnectedError(GripctlError):
    """Raised when an operation needs a connected device."""


class UnknownCharacteristicError(GripctlError):
    """Raised when the descriptor has no such service/characteristic id."""


class UnknownCommandError(GripctlError):
    """Raised when the descriptor does not define a named command."""


class UnsupportedOperationError(GripctlError):
    """Raised when a device family cannot perform the requested operation."""


class TransportError(GripctlError):
    """Base transport error (I/O failure from the platform Bluetooth stack)."""


class TransportConnectError(TransportError):
    """Raised on BLE connect failures."""


class CommandTimeoutError(GripctlError):
    """Raised when no correlated response arrives before the write timeout."""


class CommandInFlightError(GripctlError):
    """Raised when a write is issued while another awaits its response."""


class BusyError(GripctlError):
    """Raised when a tare or test protocol is started while one is active."""


class ProtocolCancelledError(GripctlError):
    """Raised when a running test protocol is cancelled or its device drops."""

    def __init__(self, message: str, *, reason: str = "cancelled") -> None:
        super().__init__(message)
        self.reason = reason
