"""Fake GATT transport that simulates a Mi Flora sensor.

This simulator emulates the GATT layout and mode handshake of a real
Flower Care device, including:
- Data and history services with their six characteristics
- Mode characteristic echo (realtime, serial and history modes)
- Realtime sensor payloads, firmware/battery payload, serial number
- History count, address-indexed history entries and history clearing
- Device time counter
Failure injection hooks let tests drive every error path.
"""

import asyncio
import logging
import struct
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from miflora_lib import protocol

logger = logging.getLogger(__name__)


@dataclass
class FakeRecord:
    """One stored history entry."""

    timestamp: int
    temperature: float
    lux: int
    moisture: int
    fertility: int


def encode_sensor_values(temperature: float, lux: int, moisture: int, fertility: int) -> bytes:
    """Build a 16-byte realtime payload as the device sends it."""
    payload = bytearray(16)
    struct.pack_into("<h", payload, 0, round(temperature * 10))
    struct.pack_into("<I", payload, 3, lux)
    payload[7] = moisture
    struct.pack_into("<H", payload, 8, fertility)
    return bytes(payload)


def encode_history_record(record: FakeRecord) -> bytes:
    """Build a 16-byte history entry payload."""
    payload = bytearray(16)
    struct.pack_into("<I", payload, 0, record.timestamp)
    struct.pack_into("<h", payload, 4, round(record.temperature * 10))
    struct.pack_into("<I", payload, 7, record.lux)
    payload[11] = record.moisture
    struct.pack_into("<H", payload, 12, record.fertility)
    return bytes(payload)


class FakeFlora:
    """Deterministic simulator of a Mi Flora peripheral (GattTransport)."""

    def __init__(
        self,
        address: str = "C4:7C:8D:6A:3E:01",
        battery: int = 99,
        firmware: str = "3.2.2",
        serial: bytes = bytes.fromhex("c47c8d6a3e01aabb"),
        temperature: float = 21.4,
        lux: int = 1250,
        moisture: int = 37,
        fertility: int = 412,
        device_time: int = 3600 * 48,
        history: Optional[List[FakeRecord]] = None,
        latency_s: float = 0.0,
    ) -> None:
        """Initialize fake sensor.

        Args:
            address: Peripheral MAC address
            battery: Battery percent reported in the firmware payload
            firmware: Firmware version string
            serial: Raw serial number bytes
            temperature, lux, moisture, fertility: Realtime sensor values
            device_time: Device uptime counter in seconds
            history: Stored history entries, index order
            latency_s: Delay applied to every GATT operation
        """
        self.address = address
        self.battery = battery
        self.firmware = firmware
        self.serial = serial
        self.temperature = temperature
        self.lux = lux
        self.moisture = moisture
        self.fertility = fertility
        self.device_time = device_time
        self.history: List[FakeRecord] = list(history or [])
        self.latency_s = latency_s

        # GATT layout
        self.services: Dict[str, Set[str]] = {
            service: set(chars) for service, chars in protocol.REQUIRED_CHARACTERISTICS.items()
        }

        # Runtime state
        self._connected = False
        self._mode = b""
        self._history_mode = b""
        self._history_address: Optional[int] = None
        self._disconnected_callback: Optional[Callable[[], None]] = None

        # Failure injection
        self.connect_error: Optional[Exception] = None
        self.read_errors: Dict[str, Exception] = {}
        self.write_errors: Dict[str, Exception] = {}
        self.read_delays: Dict[str, float] = {}
        self.mode_echo_override: Optional[bytes] = None

        # Observability for tests
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.discover_calls = 0
        self.operations: List[Tuple[str, str, bytes]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    # ========================================================================
    # GattTransport
    # ========================================================================

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_disconnected_callback(self, callback: Optional[Callable[[], None]]) -> None:
        self._disconnected_callback = callback

    async def connect(self) -> None:
        self.connect_calls += 1
        await self._delay()
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True
        self._mode = b""
        self._history_mode = b""
        self._history_address = None
        logger.debug(f"FakeFlora {self.address} connected")

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        await self._delay()
        self._connected = False
        logger.debug(f"FakeFlora {self.address} disconnected")

    async def discover_characteristics(self) -> Dict[str, Set[str]]:
        self.discover_calls += 1
        self._ensure_connected()
        return {service: set(chars) for service, chars in self.services.items()}

    async def read(self, uuid: str) -> bytes:
        self._ensure_connected()
        self._begin()
        try:
            await self._delay(self.read_delays.get(uuid))
            if uuid in self.read_errors:
                raise self.read_errors[uuid]
            data = self._read_value(uuid)
            self.operations.append(("read", uuid, data))
            return data
        finally:
            self._end()

    async def write(self, uuid: str, data: bytes) -> None:
        self._ensure_connected()
        self._begin()
        try:
            await self._delay()
            if uuid in self.write_errors:
                raise self.write_errors[uuid]
            self.operations.append(("write", uuid, bytes(data)))
            self._write_value(uuid, bytes(data))
        finally:
            self._end()

    # ========================================================================
    # Test Helpers
    # ========================================================================

    def simulate_disconnect(self) -> None:
        """Drop the link from the device side."""
        self._connected = False
        if self._disconnected_callback is not None:
            self._disconnected_callback()

    def writes_to(self, uuid: str) -> List[bytes]:
        return [data for op, char, data in self.operations if op == "write" and char == uuid]

    def reads_from(self, uuid: str) -> int:
        return sum(1 for op, char, _ in self.operations if op == "read" and char == uuid)

    # ========================================================================
    # Internal: Simulated Device
    # ========================================================================

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise RuntimeError("Not connected")

    def _begin(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)

    def _end(self) -> None:
        self.in_flight -= 1

    async def _delay(self, delay: Optional[float] = None) -> None:
        delay = self.latency_s if delay is None else delay
        if delay > 0:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)

    def _read_value(self, uuid: str) -> bytes:
        if uuid == protocol.UUID_CHARACTERISTIC_MODE:
            if self.mode_echo_override is not None:
                return self.mode_echo_override
            return self._mode

        if uuid == protocol.UUID_CHARACTERISTIC_DATA:
            if self._mode == protocol.MODE_BUFFER_SERIAL:
                return self.serial
            if self._mode == protocol.REALTIME_MODE.enable:
                return encode_sensor_values(
                    self.temperature, self.lux, self.moisture, self.fertility
                )
            return bytes.fromhex("aabbccddeeff99887766000000000000")

        if uuid == protocol.UUID_CHARACTERISTIC_FIRMWARE:
            return bytes([self.battery, 0x15]) + self.firmware.encode("ascii")

        if uuid == protocol.UUID_CHARACTERISTIC_TIME:
            return struct.pack("<I", self.device_time)

        if uuid == protocol.UUID_CHARACTERISTIC_HISTORY_MODE:
            if self.mode_echo_override is not None:
                return self.mode_echo_override
            return self._history_mode

        if uuid == protocol.UUID_CHARACTERISTIC_HISTORY_DATA:
            if self._history_mode != protocol.HISTORY_MODE.enable:
                return bytes(16)
            if self._history_address is None:
                return struct.pack("<H", len(self.history)) + bytes(14)
            if self._history_address >= len(self.history):
                return bytes.fromhex("ff" * 16)
            return encode_history_record(self.history[self._history_address])

        raise RuntimeError(f"Unknown characteristic {uuid}")

    def _write_value(self, uuid: str, data: bytes) -> None:
        if uuid == protocol.UUID_CHARACTERISTIC_MODE:
            self._mode = data
            return

        if uuid == protocol.UUID_CHARACTERISTIC_HISTORY_MODE:
            if data == protocol.CLEAR_HISTORY_BUFFER:
                logger.debug(f"FakeFlora {self.address} clearing {len(self.history)} records")
                self.history.clear()
                self._history_address = None
            elif data[:1] == protocol.HISTORY_ADDRESS_PREFIX and len(data) == 3:
                self._history_address = struct.unpack_from("<H", data, 1)[0]
            else:
                self._history_mode = data
                self._history_address = None
            return

        raise RuntimeError(f"Characteristic {uuid} is not writable")
