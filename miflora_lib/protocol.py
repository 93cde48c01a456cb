"""GATT layout, command buffers and timing for Mi Flora plant sensors.

All values are vendor-defined and fixed across firmware versions seen in the
field. UUIDs use the lower-case, dashed 128-bit form reported by bleak.
"""

from typing import Final

from miflora_lib.models import ModeCommand

# ============================================================================
# Advertisement
# ============================================================================

# Xiaomi service data carried in advertisements; product id is u16 LE at offset 2
UUID_SERVICE_XIAOMI: Final[str] = "0000fe95-0000-1000-8000-00805f9b34fb"

PRODUCT_ID_OFFSET: Final[int] = 2

PRODUCT_ID_MONITOR: Final[int] = 152  # Flower Care
PRODUCT_ID_POT: Final[int] = 349  # Flower Pot

# ============================================================================
# Data Service (firmware, mode, realtime data)
# ============================================================================

UUID_SERVICE_DATA: Final[str] = "00001204-0000-1000-8000-00805f9b34fb"
UUID_CHARACTERISTIC_MODE: Final[str] = "00001a00-0000-1000-8000-00805f9b34fb"
UUID_CHARACTERISTIC_DATA: Final[str] = "00001a01-0000-1000-8000-00805f9b34fb"
UUID_CHARACTERISTIC_FIRMWARE: Final[str] = "00001a02-0000-1000-8000-00805f9b34fb"

# ============================================================================
# History Service (device time, history mode, history data)
# ============================================================================

UUID_SERVICE_HISTORY: Final[str] = "00001206-0000-1000-8000-00805f9b34fb"
UUID_CHARACTERISTIC_HISTORY_MODE: Final[str] = "00001a10-0000-1000-8000-00805f9b34fb"
UUID_CHARACTERISTIC_HISTORY_DATA: Final[str] = "00001a11-0000-1000-8000-00805f9b34fb"
UUID_CHARACTERISTIC_TIME: Final[str] = "00001a12-0000-1000-8000-00805f9b34fb"

# Characteristics that must be present after resolution, per service
REQUIRED_CHARACTERISTICS: Final[dict[str, tuple[str, ...]]] = {
    UUID_SERVICE_DATA: (
        UUID_CHARACTERISTIC_FIRMWARE,
        UUID_CHARACTERISTIC_MODE,
        UUID_CHARACTERISTIC_DATA,
    ),
    UUID_SERVICE_HISTORY: (
        UUID_CHARACTERISTIC_TIME,
        UUID_CHARACTERISTIC_HISTORY_MODE,
        UUID_CHARACTERISTIC_HISTORY_DATA,
    ),
}

# ============================================================================
# Mode Commands (written to a mode characteristic, echoed back on success)
# ============================================================================

REALTIME_MODE: Final[ModeCommand] = ModeCommand(
    enable=bytes.fromhex("a01f"),
    disable=bytes.fromhex("c01f"),
)

HISTORY_MODE: Final[ModeCommand] = ModeCommand(
    enable=bytes.fromhex("a00000"),
    disable=bytes.fromhex("c00000"),
)

# Switches the data characteristic to return the device serial number
MODE_BUFFER_SERIAL: Final[bytes] = bytes.fromhex("b0ff")

# Written unverified to the history mode characteristic after history mode is armed
CLEAR_HISTORY_BUFFER: Final[bytes] = bytes.fromhex("a20000")

# History entry address: prefix byte followed by the entry index as u16 LE
HISTORY_ADDRESS_PREFIX: Final[bytes] = bytes.fromhex("a1")

HISTORY_INDEX_MAX: Final[int] = 0xFFFF

# ============================================================================
# Payload Sizes (minimum bytes needed to decode)
# ============================================================================

SENSOR_VALUES_MIN_SIZE: Final[int] = 10  # Last field (fertility) ends at offset 10
FIRMWARE_INFO_MIN_SIZE: Final[int] = 2
DEVICE_TIME_SIZE: Final[int] = 4
HISTORY_COUNT_SIZE: Final[int] = 2
HISTORY_RECORD_MIN_SIZE: Final[int] = 14

# ============================================================================
# Timing Constants (seconds)
# ============================================================================

# Deadline applied to every device interaction unless overridden
DEFAULT_TIMEOUT_S: Final[float] = 10.0

# Default duration of an advertisement scan
DEFAULT_SCAN_TIMEOUT_S: Final[float] = 10.0
