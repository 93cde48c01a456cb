"""High-level session for one Mi Flora device with state management."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from miflora_lib import parsing, protocol
from miflora_lib.errors import (
    CharacteristicResolutionError,
    ConnectionFailure,
    MiFloraError,
    ModeMismatch,
)
from miflora_lib.history import MiFloraHistory
from miflora_lib.models import (
    ConnectionState,
    DeviceReport,
    DeviceType,
    FirmwareInfo,
    HistoryRecord,
    ModeOutcome,
    SensorValues,
)
from miflora_lib.timeout import guard
from miflora_lib.transport import BleakTransport, CharacteristicHandle, GattTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MiFloraDevice:
    """Session with a single Mi Flora sensor.

    Manages the connection state machine, one-time characteristic resolution
    per connection, mode switching and the sensor queries. All public
    operations on one device run one at a time, in call order; operations on
    different devices are independent.
    """

    def __init__(
        self,
        transport: GattTransport,
        address: str,
        name: Optional[str] = None,
        device_type: DeviceType = DeviceType.UNKNOWN,
        timeout_s: Optional[float] = protocol.DEFAULT_TIMEOUT_S,
    ) -> None:
        """Initialize device session.

        Args:
            transport: GATT transport for this peripheral (BleakTransport or a fake)
            address: MAC address; normalised to lower-case colon form
            name: Advertised local name
            device_type: Classification from the advertisement
            timeout_s: Deadline for every device operation. None or <= 0 disables it.
        """
        self._transport = transport
        self.address = parsing.normalise_address(address)
        self.name = name
        self.type = device_type
        self.last_discovery = time.time()

        self._timeout_s = timeout_s
        self._state = ConnectionState.DISCONNECTED
        self._handles: Dict[str, CharacteristicHandle] = {}
        self._connect_task: Optional["asyncio.Future[None]"] = None
        self._pending: Set["asyncio.Future[object]"] = set()

        # Serializes every GATT exchange on this device
        self._lock = asyncio.Lock()

        self._history = MiFloraHistory(self)

        transport.set_disconnected_callback(self._handle_disconnected)

    @classmethod
    def from_advertisement(
        cls,
        device: BLEDevice,
        advertisement: AdvertisementData,
        timeout_s: Optional[float] = protocol.DEFAULT_TIMEOUT_S,
        transport_factory: Callable[[BLEDevice], GattTransport] = BleakTransport,
    ) -> Optional["MiFloraDevice"]:
        """Create a device from a scan result.

        Args:
            device: Scanned peripheral
            advertisement: Advertisement data received with it
            timeout_s: Operation deadline for the new device
            transport_factory: Builds the transport for the peripheral

        Returns:
            MiFloraDevice for Flower Care (152) and Flower Pot (349) product
            codes, None for any other advertisement.
        """
        product_id = parsing.parse_product_id(advertisement.service_data or {})
        device_type = parsing.classify_product(product_id)
        if device_type is None:
            return None

        return cls(
            transport_factory(device),
            address=device.address,
            name=advertisement.local_name or device.name,
            device_type=device_type,
            timeout_s=timeout_s,
        )

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._transport.is_connected

    @property
    def timeout_s(self) -> Optional[float]:
        return self._timeout_s

    @property
    def history(self) -> MiFloraHistory:
        return self._history

    def report(
        self,
        firmware_info: Optional[FirmwareInfo] = None,
        sensor_values: Optional[SensorValues] = None,
        serial: Optional[str] = None,
    ) -> DeviceReport:
        """Envelope query results with this device's address and type."""
        return DeviceReport(
            address=self.address,
            type=self.type,
            firmware_info=firmware_info,
            sensor_values=sensor_values,
            serial=serial,
        )

    # ========================================================================
    # Connection Management
    # ========================================================================

    async def connect(self) -> None:
        """Connect and resolve characteristics. No-op if already connected.

        Raises:
            ConnectionFailure: If the transport cannot connect
            CharacteristicResolutionError: If an expected characteristic is missing
            OperationTimeout: If the sequence does not finish in time
        """
        await self._exclusive("connect", self._connect)

    async def disconnect(self) -> None:
        """Disconnect from the device. No-op if already disconnected.

        Raises:
            ConnectionFailure: If the transport reports an error
            OperationTimeout: If the disconnect does not finish in time
        """
        await self._exclusive("disconnect", self._disconnect)

    async def _connect(self) -> None:
        if self.is_connected:
            return

        # Tracked with the GATT exchanges so the lock holder settles it too
        self._connect_task = asyncio.ensure_future(self._establish())
        self._pending.add(self._connect_task)
        self._connect_task.add_done_callback(self._pending.discard)

        await guard(self._timeout_s, self._connect_task, f"connect {self.address}")

    async def _establish(self) -> None:
        self._state = ConnectionState.CONNECTING
        try:
            if not self._transport.is_connected:
                logger.info(f"Initiating connection to {self.address}")
                try:
                    await self._transport.connect()
                except MiFloraError:
                    raise
                except Exception as e:
                    raise ConnectionFailure(f"Failed to connect to {self.address}: {e}") from e

            await self._resolve_characteristics()
        except BaseException:
            self._invalidate_handles()
            self._state = ConnectionState.DISCONNECTED
            raise

        self._state = ConnectionState.CONNECTED
        logger.info(f"Connected to {self.address}")

    async def _disconnect(self) -> None:
        if self._state == ConnectionState.DISCONNECTED and not self._transport.is_connected:
            return

        await guard(self._timeout_s, self._teardown(), f"disconnect {self.address}")

    async def _teardown(self) -> None:
        self._state = ConnectionState.DISCONNECTING
        logger.info(f"Closing connection to {self.address}")
        try:
            if self._transport.is_connected:
                try:
                    await self._transport.disconnect()
                except MiFloraError:
                    raise
                except Exception as e:
                    raise ConnectionFailure(
                        f"Failed to disconnect from {self.address}: {e}"
                    ) from e
        finally:
            self._invalidate_handles()
            self._state = ConnectionState.DISCONNECTED

        logger.info(f"Disconnected from {self.address}")

    def _handle_disconnected(self) -> None:
        """Transport callback: peripheral dropped the link."""
        if self._state != ConnectionState.DISCONNECTED:
            logger.info(f"Device {self.address} disconnected")
        self._invalidate_handles()
        self._state = ConnectionState.DISCONNECTED

    async def _resolve_characteristics(self) -> None:
        logger.debug(f"Resolving characteristics of {self.address}")
        discovered = await self._transport.discover_characteristics()
        discovered = {
            service.lower(): {char.lower() for char in chars}
            for service, chars in discovered.items()
        }

        handles: Dict[str, CharacteristicHandle] = {}
        for service_uuid, char_uuids in protocol.REQUIRED_CHARACTERISTICS.items():
            if service_uuid not in discovered:
                raise CharacteristicResolutionError(
                    f"Service {service_uuid} not found on {self.address}", service_uuid
                )
            for char_uuid in char_uuids:
                if char_uuid not in discovered[service_uuid]:
                    raise CharacteristicResolutionError(
                        f"Characteristic {char_uuid} not found on {self.address}",
                        char_uuid,
                    )
                handles[char_uuid] = CharacteristicHandle(
                    self._transport, char_uuid, self._timeout_s, self._pending
                )

        self._handles = handles
        self._history._resolve_characteristics(handles)
        logger.debug(
            f"Resolved {len(handles)} characteristics "
            f"({sum(len(c) for c in discovered.values())} discovered) on {self.address}"
        )

    def _invalidate_handles(self) -> None:
        for handle in self._handles.values():
            handle.invalidate()
        self._handles = {}
        self._history._invalidate()

    def _handle(self, uuid: str) -> CharacteristicHandle:
        handle = self._handles.get(uuid)
        if handle is None:
            raise self._unresolved(uuid)
        return handle

    def _unresolved(self, uuid: str) -> MiFloraError:
        """Error for a characteristic with no live handle."""
        if not self._transport.is_connected:
            return ConnectionFailure(f"Connection to {self.address} was lost")
        return CharacteristicResolutionError(
            f"Characteristic {uuid} is not resolved on {self.address}", uuid
        )

    # ========================================================================
    # Serialization
    # ========================================================================

    async def _exclusive(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        timeout_s: Optional[float] = None,
    ) -> T:
        """Run an operation while holding the device lock, under a deadline.

        The deadline starts once the lock is held. If it passes, the caller
        gets OperationTimeout right away and the lock stays held while the
        abandoned operation settles: the connect and GATT exchanges it started
        get one more device deadline to finish. Whatever is still running
        after that is cut loose. A pending connect is cancelled, and the
        session's handles are invalidated so late completions land on dead
        handles and the next operation resolves afresh.

        Args:
            name: Operation name for logs and errors
            operation: Zero-argument coroutine function to run
            timeout_s: Deadline override. None uses the device default.
        """
        deadline = self._timeout_s if timeout_s is None else timeout_s

        await self._lock.acquire()
        try:
            task = asyncio.ensure_future(self._run_settled(operation))
        except BaseException:
            self._lock.release()
            raise
        task.add_done_callback(lambda _task: self._lock.release())

        return await guard(deadline, task, f"{name} on {self.address}")

    async def _run_settled(self, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        finally:
            await self._settle()

    async def _settle(self) -> None:
        if not self._pending:
            return

        logger.debug(
            f"Waiting for {len(self._pending)} abandoned exchange(s) on {self.address}"
        )
        settle_s = self._timeout_s if self._timeout_s and self._timeout_s > 0 else None
        loop = asyncio.get_running_loop()
        deadline = None if settle_s is None else loop.time() + settle_s

        # An abandoned operation can start further exchanges while it settles
        unfinished: Set["asyncio.Future[object]"] = set()
        while self._pending:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                unfinished = set(self._pending)
                break
            _, unfinished = await asyncio.wait(set(self._pending), timeout=remaining)
            if unfinished:
                break
        if not unfinished:
            return

        logger.warning(
            f"{len(unfinished)} exchange(s) on {self.address} did not finish; "
            "dropping the session's handles"
        )
        for future in unfinished:
            self._pending.discard(future)
        if self._connect_task in unfinished:
            # Must not reach CONNECTED after the lock is released
            self._connect_task.cancel()
            await asyncio.wait({self._connect_task}, timeout=settle_s)
        self._invalidate_handles()
        self._state = ConnectionState.DISCONNECTED

    # ========================================================================
    # Mode Switching
    # ========================================================================

    async def _set_device_mode(self, command: bytes, handle: CharacteristicHandle) -> bytes:
        """Write a mode command and verify the device echoes it back.

        Returns:
            The echoed bytes

        Raises:
            ModeMismatch: If the read-back differs from the command
        """
        return await guard(
            self._timeout_s,
            self._write_and_verify(command, handle),
            f"set mode 0x{command.hex().upper()}",
        )

    async def _write_and_verify(self, command: bytes, handle: CharacteristicHandle) -> bytes:
        logger.debug(f"Changing device mode to 0x{command.hex().upper()} via {handle.uuid}")
        await handle.write(command)
        echoed = await handle.read()

        outcome = parsing.evaluate_mode_echo(command, echoed)
        if outcome != ModeOutcome.ARMED:
            raise ModeMismatch(command, echoed, outcome)

        logger.debug("Successfully changed device mode")
        return echoed

    async def set_realtime_data_mode(self, enable: bool) -> None:
        """Arm or disarm realtime data mode.

        Raises:
            ModeMismatch: If the device does not confirm the mode change
        """
        await self._exclusive(
            f"{'enable' if enable else 'disable'} realtime mode",
            lambda: self._set_realtime_data_mode(enable),
        )

    async def _set_realtime_data_mode(self, enable: bool) -> None:
        logger.debug(f"{'Enabling' if enable else 'Disabling'} realtime data mode")
        await self._connect()
        await self._set_device_mode(
            protocol.REALTIME_MODE.buffer(enable),
            self._handle(protocol.UUID_CHARACTERISTIC_MODE),
        )

    # ========================================================================
    # Queries
    # ========================================================================

    async def query_firmware_info(self) -> FirmwareInfo:
        """Read battery level and firmware version."""
        return await self._exclusive("query firmware info", self._query_firmware_info)

    async def query_sensor_values(self) -> SensorValues:
        """Arm realtime mode and read the current sensor values."""
        return await self._exclusive("query sensor values", self._query_sensor_values)

    async def query_serial(self) -> str:
        """Arm serial mode and read the serial number as hex."""
        return await self._exclusive("query serial", self._query_serial)

    async def query(self) -> DeviceReport:
        """Query firmware info and sensor values in one report.

        Raises:
            MiFloraError: The first sub-query failure, unchanged
        """
        return await self._exclusive("query", self._query)

    async def query_history(self, timeout_s: Optional[float] = None) -> List[HistoryRecord]:
        """Read every stored history record. See MiFloraHistory.query_history."""
        return await self._history.query_history(timeout_s=timeout_s)

    async def clear_history(self) -> None:
        """Erase stored history. See MiFloraHistory.clear_history."""
        await self._history.clear_history()

    async def _query_firmware_info(self) -> FirmwareInfo:
        logger.debug(f"Querying firmware information of {self.address}")
        await self._connect()
        data = await self._handle(protocol.UUID_CHARACTERISTIC_FIRMWARE).read()
        info = parsing.parse_firmware_info(data)
        logger.debug(f"Successfully queried firmware information: {info}")
        return info

    async def _query_sensor_values(self) -> SensorValues:
        logger.debug(f"Querying sensor values of {self.address}")
        await self._connect()
        await self._set_realtime_data_mode(True)
        data = await self._handle(protocol.UUID_CHARACTERISTIC_DATA).read()
        values = parsing.parse_sensor_values(data)
        logger.debug(f"Successfully queried sensor values: {values}")
        return values

    async def _query_serial(self) -> str:
        logger.debug(f"Querying serial number of {self.address}")
        await self._connect()
        await self._set_device_mode(
            protocol.MODE_BUFFER_SERIAL,
            self._handle(protocol.UUID_CHARACTERISTIC_MODE),
        )
        data = await self._handle(protocol.UUID_CHARACTERISTIC_DATA).read()
        serial = parsing.parse_serial(data)
        logger.debug(f"Successfully queried serial: {serial}")
        return serial

    async def _query(self) -> DeviceReport:
        logger.debug(f"Querying multiple information of {self.address}")
        firmware_info = await guard(
            self._timeout_s, self._query_firmware_info(), "query firmware info"
        )
        sensor_values = await guard(
            self._timeout_s, self._query_sensor_values(), "query sensor values"
        )
        logger.debug("Successfully queried multiple information")
        return self.report(firmware_info=firmware_info, sensor_values=sensor_values)

    def __repr__(self) -> str:
        return (
            f"MiFloraDevice(address={self.address!r}, name={self.name!r}, "
            f"type={self.type.value!r}, state={self._state.value!r})"
        )
