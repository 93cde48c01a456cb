"""Data models for the Mi Flora BLE library."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ConnectionState(Enum):
    """Device session connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class DeviceType(Enum):
    """Device classification derived from the advertised product code."""

    MONITOR = "MiFloraMonitor"
    POT = "MiFloraPot"
    UNKNOWN = "unknown"


class ModeOutcome(Enum):
    """Result of comparing a written mode command with the device echo."""

    ARMED = "armed"
    UNARMED = "unarmed"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class ModeCommand:
    """Pair of fixed buffers that enable or disable a device data mode."""

    enable: bytes
    disable: bytes

    def buffer(self, enable: bool) -> bytes:
        return self.enable if enable else self.disable


@dataclass(frozen=True)
class SensorValues:
    """Realtime sensor snapshot.

    Attributes:
        temperature: Air temperature in degrees Celsius (0.1 resolution).
        lux: Illuminance in lux.
        moisture: Soil moisture in percent.
        fertility: Soil conductivity in µS/cm.
    """

    temperature: float
    lux: int
    moisture: int
    fertility: int


@dataclass(frozen=True)
class FirmwareInfo:
    """Battery level and firmware version reported by the device.

    Attributes:
        battery: Battery level in percent (0-100).
        firmware: Firmware version string, e.g. "3.2.2".
    """

    battery: int
    firmware: str


@dataclass(frozen=True)
class EpochEstimate:
    """Mapping from device-relative seconds to host wall-clock time.

    Attributes:
        wall_time_base: Host time (Unix seconds) corresponding to device time zero.
        device_time: Device uptime counter that was read, in seconds.
        host_time: Averaged host clock sample, in Unix seconds.
    """

    wall_time_base: float
    device_time: int
    host_time: float

    def to_datetime(self, timestamp: int) -> datetime:
        """Convert a device-relative timestamp into a UTC datetime."""
        return datetime.fromtimestamp(timestamp + self.wall_time_base, tz=timezone.utc)


@dataclass(frozen=True)
class HistoryRecord:
    """One hourly history entry stored on the device.

    Attributes:
        timestamp: Device-relative time of the sample, in seconds.
        temperature: Air temperature in degrees Celsius.
        lux: Illuminance in lux.
        moisture: Soil moisture in percent.
        fertility: Soil conductivity in µS/cm.
        date: Estimated absolute UTC time of the sample. None until an
            epoch estimate has been applied.
    """

    timestamp: int
    temperature: float
    lux: int
    moisture: int
    fertility: int
    date: Optional[datetime] = None


@dataclass(frozen=True)
class DeviceReport:
    """Query results enveloped with the identity of the device they came from."""

    address: str
    type: DeviceType
    firmware_info: Optional[FirmwareInfo] = None
    sensor_values: Optional[SensorValues] = None
    serial: Optional[str] = None
