"""
miflora_lib - asyncio client library for Xiaomi Mi Flora plant sensors over BLE.

Supports Flower Care (product code 152) and Flower Pot (product code 349).
"""

from miflora_lib.device import MiFloraDevice
from miflora_lib.errors import (
    CharacteristicResolutionError,
    ConnectionFailure,
    DecodeError,
    MiFloraError,
    ModeMismatch,
    OperationTimeout,
    ReadFailure,
    WriteFailure,
)
from miflora_lib.history import MiFloraHistory
from miflora_lib.models import (
    ConnectionState,
    DeviceReport,
    DeviceType,
    EpochEstimate,
    FirmwareInfo,
    HistoryRecord,
    SensorValues,
)
from miflora_lib.scanner import discover, find_device
from miflora_lib.transport import BleakTransport

__version__ = "0.1.0"

__all__ = [
    "MiFloraDevice",
    "MiFloraHistory",
    "BleakTransport",
    "discover",
    "find_device",
    "ConnectionState",
    "DeviceType",
    "DeviceReport",
    "EpochEstimate",
    "FirmwareInfo",
    "HistoryRecord",
    "SensorValues",
    "MiFloraError",
    "OperationTimeout",
    "ConnectionFailure",
    "CharacteristicResolutionError",
    "ReadFailure",
    "WriteFailure",
    "ModeMismatch",
    "DecodeError",
]
