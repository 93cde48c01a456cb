"""BLE GATT transport layer for Mi Flora communication."""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol, Set, TypeVar, Union

from bleak import BleakClient
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from miflora_lib import protocol
from miflora_lib.errors import (
    CharacteristicResolutionError,
    ConnectionFailure,
    MiFloraError,
    ReadFailure,
    WriteFailure,
)
from miflora_lib.timeout import guard

logger = logging.getLogger(__name__)

DisconnectedCallback = Callable[[], None]

T = TypeVar("T")


class GattTransport(Protocol):
    """Protocol for a per-device GATT connection (allows test doubles)."""

    @property
    def is_connected(self) -> bool:
        """Check if the link to the peripheral is up."""
        ...

    async def connect(self) -> None:
        """Open the link to the peripheral."""
        ...

    async def disconnect(self) -> None:
        """Close the link to the peripheral."""
        ...

    async def discover_characteristics(self) -> Dict[str, Set[str]]:
        """Return discovered characteristic UUIDs keyed by service UUID."""
        ...

    async def read(self, uuid: str) -> bytes:
        """Read a characteristic value."""
        ...

    async def write(self, uuid: str, data: bytes) -> None:
        """Write a characteristic value with response."""
        ...

    def set_disconnected_callback(self, callback: Optional[DisconnectedCallback]) -> None:
        """Register a callback fired when the peripheral drops the link."""
        ...


class BleakTransport:
    """GattTransport implementation backed by bleak.

    Wraps BleakError and transport-level timeouts into library errors so the
    device layer only has to deal with MiFloraError subclasses.
    """

    def __init__(
        self,
        device: Union[BLEDevice, str],
        connect_timeout_s: float = protocol.DEFAULT_TIMEOUT_S,
    ) -> None:
        """Initialize transport for one peripheral.

        Args:
            device: BLEDevice from a scan, or a MAC address / platform identifier
            connect_timeout_s: Timeout bleak applies to its own connect procedure
        """
        self._device = device
        self._disconnected_callback: Optional[DisconnectedCallback] = None
        self._client = BleakClient(
            device,
            disconnected_callback=self._on_disconnected,
            timeout=connect_timeout_s,
        )

    def _on_disconnected(self, _client: BleakClient) -> None:
        logger.debug(f"Peripheral {self._client.address} dropped the connection")
        if self._disconnected_callback is not None:
            self._disconnected_callback()

    def set_disconnected_callback(self, callback: Optional[DisconnectedCallback]) -> None:
        self._disconnected_callback = callback

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    async def connect(self) -> None:
        """Connect to the peripheral.

        Raises:
            ConnectionFailure: If bleak cannot establish the link
        """
        try:
            await self._client.connect()
            logger.debug(f"Connected to {self._client.address}")
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise ConnectionFailure(
                f"Failed to connect to {self._client.address}: {e}"
            ) from e

    async def disconnect(self) -> None:
        """Disconnect from the peripheral.

        Raises:
            ConnectionFailure: If bleak reports an error while disconnecting
        """
        try:
            await self._client.disconnect()
            logger.debug(f"Disconnected from {self._client.address}")
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise ConnectionFailure(
                f"Failed to disconnect from {self._client.address}: {e}"
            ) from e

    async def discover_characteristics(self) -> Dict[str, Set[str]]:
        """Map each discovered service UUID to the UUIDs of its characteristics.

        bleak resolves services as part of connect(), so this only reads the
        cached service collection.
        """
        try:
            services = self._client.services
        except BleakError as e:
            raise CharacteristicResolutionError(
                f"Service discovery has not completed: {e}"
            ) from e

        discovered: Dict[str, Set[str]] = {}
        for service in services:
            discovered[service.uuid.lower()] = {
                char.uuid.lower() for char in service.characteristics
            }
        return discovered

    async def read(self, uuid: str) -> bytes:
        try:
            return bytes(await self._client.read_gatt_char(uuid))
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise ReadFailure(f"Failed to read characteristic {uuid}: {e}", uuid) from e

    async def write(self, uuid: str, data: bytes) -> None:
        try:
            await self._client.write_gatt_char(uuid, data, response=True)
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise WriteFailure(f"Failed to write characteristic {uuid}: {e}", uuid) from e


class CharacteristicHandle:
    """One resolved characteristic within one connection session.

    Each read and write is guarded by the handle's deadline. Once the session
    it belongs to ends, the handle refuses further I/O.

    Exchanges still running on the transport are kept in ``pending`` (shared
    by all handles of a device) until they complete, including ones the
    caller stopped waiting for.
    """

    def __init__(
        self,
        transport: GattTransport,
        uuid: str,
        timeout_s: Optional[float] = protocol.DEFAULT_TIMEOUT_S,
        pending: Optional[Set["asyncio.Future[object]"]] = None,
    ) -> None:
        self._transport = transport
        self.uuid = uuid
        self._timeout_s = timeout_s
        self._pending = pending if pending is not None else set()
        self._valid = True

    @property
    def is_valid(self) -> bool:
        return self._valid

    def invalidate(self) -> None:
        """Detach handle from its session (called on disconnect)."""
        self._valid = False

    def _ensure_valid(self) -> None:
        if not self._valid:
            if not self._transport.is_connected:
                raise ConnectionFailure(f"Link lost before accessing characteristic {self.uuid}")
            raise CharacteristicResolutionError(
                f"Characteristic {self.uuid} belongs to a closed session; reconnect first",
                self.uuid,
            )

    async def read(self) -> bytes:
        """Read the characteristic value.

        Raises:
            OperationTimeout: If the read does not complete in time
            ReadFailure: If the transport reports an error
            ConnectionFailure: If the link dropped since the handle was resolved
            CharacteristicResolutionError: If the handle has been invalidated
        """
        self._ensure_valid()
        data = await guard(self._timeout_s, self._track(self._read()), f"read {self.uuid}")
        logger.debug(f"Read 0x{data.hex().upper()} from characteristic {self.uuid}")
        return data

    async def write(self, data: bytes) -> None:
        """Write a value to the characteristic with response.

        Raises:
            OperationTimeout: If the write is not acknowledged in time
            WriteFailure: If the transport reports an error
            ConnectionFailure: If the link dropped since the handle was resolved
            CharacteristicResolutionError: If the handle has been invalidated
        """
        self._ensure_valid()
        await guard(self._timeout_s, self._track(self._write(data)), f"write {self.uuid}")
        logger.debug(f"Wrote 0x{bytes(data).hex().upper()} to characteristic {self.uuid}")

    def _track(self, operation: Awaitable[T]) -> "asyncio.Future[T]":
        future = asyncio.ensure_future(operation)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        return future

    async def _read(self) -> bytes:
        try:
            return bytes(await self._transport.read(self.uuid))
        except MiFloraError:
            raise
        except Exception as e:
            raise ReadFailure(f"Failed to read characteristic {self.uuid}: {e}", self.uuid) from e

    async def _write(self, data: bytes) -> None:
        try:
            await self._transport.write(self.uuid, bytes(data))
        except MiFloraError:
            raise
        except Exception as e:
            raise WriteFailure(
                f"Failed to write characteristic {self.uuid}: {e}", self.uuid
            ) from e

    def __repr__(self) -> str:
        state = "valid" if self._valid else "invalidated"
        return f"CharacteristicHandle({self.uuid!r}, {state})"
