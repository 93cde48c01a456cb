"""Pure functions for decoding Mi Flora payloads and building command buffers.

Every multi-byte field is little-endian. Decoders only look at the bytes they
need, so longer payloads (the realtime characteristic returns 16 bytes) are
accepted as long as the defined fields are present.
"""

import logging
import struct
from datetime import datetime, timezone
from typing import Mapping, Optional

from miflora_lib import protocol
from miflora_lib.errors import DecodeError
from miflora_lib.models import (
    DeviceType,
    FirmwareInfo,
    HistoryRecord,
    ModeOutcome,
    SensorValues,
)

logger = logging.getLogger(__name__)

_SENSOR_TEMPERATURE = struct.Struct("<h")  # offset 0, tenths of a degree
_SENSOR_LUX = struct.Struct("<I")  # offset 3
_SENSOR_FERTILITY = struct.Struct("<H")  # offset 8

_HISTORY_RECORD = struct.Struct("<Ih")  # timestamp @0, temperature @4
_U32 = struct.Struct("<I")
_U16 = struct.Struct("<H")


def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise DecodeError(
            f"{what} payload too short: expected at least {size} bytes, "
            f"got {len(data)} (0x{bytes(data).hex().upper()})"
        )


def parse_sensor_values(data: bytes) -> SensorValues:
    """Decode the realtime data characteristic.

    Layout: temperature i16@0 (tenths of °C), lux u32@3, moisture u8@7,
    fertility u16@8. Byte 2 is unused.

    Args:
        data: Raw characteristic value

    Returns:
        Decoded SensorValues

    Raises:
        DecodeError: If payload is shorter than the defined fields
    """
    _require(data, protocol.SENSOR_VALUES_MIN_SIZE, "Sensor values")

    (temperature,) = _SENSOR_TEMPERATURE.unpack_from(data, 0)
    (lux,) = _SENSOR_LUX.unpack_from(data, 3)
    (fertility,) = _SENSOR_FERTILITY.unpack_from(data, 8)

    return SensorValues(
        temperature=temperature / 10,
        lux=lux,
        moisture=data[7],
        fertility=fertility,
    )


def parse_firmware_info(data: bytes) -> FirmwareInfo:
    """Decode the firmware characteristic: battery u8@0, ASCII version from offset 2.

    Raises:
        DecodeError: If payload is shorter than 2 bytes
    """
    _require(data, protocol.FIRMWARE_INFO_MIN_SIZE, "Firmware info")

    firmware = bytes(data[2:]).decode("ascii", errors="replace").rstrip("\x00")
    return FirmwareInfo(battery=data[0], firmware=firmware)


def parse_serial(data: bytes) -> str:
    """Serial number is the raw data characteristic value as lower-case hex."""
    if not data:
        raise DecodeError("Serial payload is empty")
    return bytes(data).hex()


def parse_device_time(data: bytes) -> int:
    """Decode the device time characteristic (seconds since device start, u32@0)."""
    _require(data, protocol.DEVICE_TIME_SIZE, "Device time")
    return _U32.unpack_from(data, 0)[0]


def parse_history_count(data: bytes) -> int:
    """Decode the number of stored history entries (u16@0)."""
    _require(data, protocol.HISTORY_COUNT_SIZE, "History count")
    return _U16.unpack_from(data, 0)[0]


def parse_history_record(
    data: bytes, wall_time_base: Optional[float] = None
) -> HistoryRecord:
    """Decode one history entry.

    Layout: timestamp u32@0, temperature i16@4 (tenths of °C), lux u32@7,
    moisture u8@11, fertility u16@12.

    Args:
        data: Raw history data characteristic value
        wall_time_base: Unix time of device time zero. When given, the record's
            date is set to timestamp + wall_time_base.

    Returns:
        Decoded HistoryRecord

    Raises:
        DecodeError: If payload is shorter than 14 bytes
    """
    _require(data, protocol.HISTORY_RECORD_MIN_SIZE, "History record")

    timestamp, temperature = _HISTORY_RECORD.unpack_from(data, 0)
    (lux,) = _U32.unpack_from(data, 7)
    (fertility,) = _U16.unpack_from(data, 12)

    date = None
    if wall_time_base is not None:
        date = datetime.fromtimestamp(timestamp + wall_time_base, tz=timezone.utc)

    return HistoryRecord(
        timestamp=timestamp,
        temperature=temperature / 10,
        lux=lux,
        moisture=data[11],
        fertility=fertility,
        date=date,
    )


def history_address(index: int) -> bytes:
    """Build the buffer that selects history entry ``index``.

    The address is the prefix byte 0xA1 followed by the index as u16 LE,
    so index 0 is ``a10000``, 1 is ``a10100`` and 255 is ``a1ff00``.

    Raises:
        ValueError: If index is outside 0-65535
    """
    if not (0 <= index <= protocol.HISTORY_INDEX_MAX):
        raise ValueError(
            f"History index must be 0-{protocol.HISTORY_INDEX_MAX}, got {index}"
        )
    return protocol.HISTORY_ADDRESS_PREFIX + _U16.pack(index)


def evaluate_mode_echo(written: bytes, echoed: bytes) -> ModeOutcome:
    """Compare a written mode command with what the device reads back.

    Returns:
        ARMED if the echo matches byte for byte, UNARMED if nothing came back,
        MISMATCH otherwise.
    """
    if bytes(echoed) == bytes(written):
        return ModeOutcome.ARMED
    if not echoed:
        return ModeOutcome.UNARMED
    return ModeOutcome.MISMATCH


def parse_product_id(service_data: Mapping[str, bytes]) -> Optional[int]:
    """Extract the product id from advertisement service data.

    Args:
        service_data: Mapping of service UUID to raw service data bytes,
            as found in bleak's AdvertisementData.service_data.

    Returns:
        Product id (u16 LE at offset 2 of the Xiaomi service data), or None
        if the advertisement carries no usable Xiaomi service data.
    """
    data = None
    for uuid, value in service_data.items():
        if uuid.lower() == protocol.UUID_SERVICE_XIAOMI:
            data = value
            break

    if data is None or len(data) < protocol.PRODUCT_ID_OFFSET + 2:
        return None

    return _U16.unpack_from(data, protocol.PRODUCT_ID_OFFSET)[0]


def classify_product(product_id: Optional[int]) -> Optional[DeviceType]:
    """Map an advertised product id to a device type; None means not a Mi Flora."""
    if product_id == protocol.PRODUCT_ID_MONITOR:
        return DeviceType.MONITOR
    if product_id == protocol.PRODUCT_ID_POT:
        return DeviceType.POT
    return None


def normalise_address(address: str) -> str:
    """Normalise a MAC address to lower-case, colon-separated form."""
    return address.replace("-", ":").lower()
