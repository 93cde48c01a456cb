"""History retrieval for Mi Flora devices.

The device stores one measurement per hour. Entries are read one at a time:
arm history mode, then for every index write an address buffer to the
history mode characteristic and read the entry back from the history data
characteristic. Entry timestamps are seconds since the device started, so
they are converted to wall-clock time with an estimate of when that was.
"""

import logging
import time
from typing import TYPE_CHECKING, Callable, List, Mapping, Optional

from miflora_lib import parsing, protocol
from miflora_lib.models import EpochEstimate, HistoryRecord
from miflora_lib.timeout import guard
from miflora_lib.transport import CharacteristicHandle

if TYPE_CHECKING:
    from miflora_lib.device import MiFloraDevice

logger = logging.getLogger(__name__)


class MiFloraHistory:
    """History engine bound to one MiFloraDevice.

    Shares the device's characteristic handles, mode switching and lock, so
    history operations queue behind any other operation on the same device.
    """

    def __init__(
        self,
        device: "MiFloraDevice",
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize history engine.

        Args:
            device: Owning device session
            clock: Host wall-clock source in Unix seconds
        """
        self._device = device
        self._clock = clock
        self._device_time_characteristic: Optional[CharacteristicHandle] = None
        self._mode_characteristic: Optional[CharacteristicHandle] = None
        self._history_characteristic: Optional[CharacteristicHandle] = None

    def _resolve_characteristics(self, handles: Mapping[str, CharacteristicHandle]) -> None:
        self._device_time_characteristic = handles.get(protocol.UUID_CHARACTERISTIC_TIME)
        self._mode_characteristic = handles.get(protocol.UUID_CHARACTERISTIC_HISTORY_MODE)
        self._history_characteristic = handles.get(protocol.UUID_CHARACTERISTIC_HISTORY_DATA)

    def _invalidate(self) -> None:
        self._device_time_characteristic = None
        self._mode_characteristic = None
        self._history_characteristic = None

    def _require(self, handle: Optional[CharacteristicHandle], uuid: str) -> CharacteristicHandle:
        if handle is None:
            raise self._device._unresolved(uuid)
        return handle

    @property
    def _timeout_s(self) -> Optional[float]:
        return self._device.timeout_s

    # ========================================================================
    # Public Operations
    # ========================================================================

    async def query_history(self, timeout_s: Optional[float] = None) -> List[HistoryRecord]:
        """Read every stored history record in index order.

        Args:
            timeout_s: Deadline for the whole traversal. None uses the device
                default, <= 0 disables it. Each individual read and write
                keeps the device default deadline.

        Returns:
            Records ordered by index, each with its estimated UTC date

        Raises:
            MiFloraError: First failure of any step; no partial result is returned
        """
        return await self._device._exclusive(
            "query history", self._query_history, timeout_s=timeout_s
        )

    async def clear_history(self) -> None:
        """Arm history mode, then write the clear command.

        The clear write itself is not read back, so success only means the
        device acknowledged the write.
        """
        await self._device._exclusive("clear history", self._clear_history)

    async def query_time(self) -> EpochEstimate:
        """Estimate the wall-clock time at which the device counter was zero."""
        return await self._device._exclusive("query device time", self._query_time)

    async def query_history_count(self) -> int:
        """Arm history mode and read the number of stored records."""
        return await self._device._exclusive("query history count", self._query_history_count)

    async def set_history_data_mode(self, enable: bool) -> None:
        """Arm or disarm history mode.

        Raises:
            ModeMismatch: If the device does not confirm the mode change
        """
        await self._device._exclusive(
            f"{'enable' if enable else 'disable'} history mode",
            lambda: self._set_history_data_mode(enable),
        )

    # ========================================================================
    # Steps
    # ========================================================================

    async def _set_history_data_mode(self, enable: bool) -> None:
        logger.debug(f"{'Enabling' if enable else 'Disabling'} history data mode")
        await self._device._connect()
        await self._device._set_device_mode(
            protocol.HISTORY_MODE.buffer(enable),
            self._require(self._mode_characteristic, protocol.UUID_CHARACTERISTIC_HISTORY_MODE),
        )

    async def _read_device_time(self) -> int:
        logger.debug("Querying device time")
        await self._device._connect()
        handle = self._require(
            self._device_time_characteristic, protocol.UUID_CHARACTERISTIC_TIME
        )
        data = await handle.read()
        device_time = parsing.parse_device_time(data)
        logger.debug(f"Device time: {device_time}s")
        return device_time

    async def _query_time(self) -> EpochEstimate:
        # Both host samples are taken before the device read; accuracy is
        # a few seconds at best
        start = self._clock()
        host_time = (self._clock() + start) / 2
        device_time = await guard(self._timeout_s, self._read_device_time(), "read device time")
        estimate = EpochEstimate(
            wall_time_base=host_time - device_time,
            device_time=device_time,
            host_time=host_time,
        )
        logger.debug(f"Wall time base: {estimate.wall_time_base}")
        return estimate

    async def _amount_of_records(self) -> int:
        handle = self._require(
            self._history_characteristic, protocol.UUID_CHARACTERISTIC_HISTORY_DATA
        )
        data = await handle.read()
        count = parsing.parse_history_count(data)
        logger.debug(f"Successfully queried amount of history records: {count}")
        return count

    async def _query_history_count(self) -> int:
        await self._set_history_data_mode(True)
        return await guard(self._timeout_s, self._amount_of_records(), "read history count")

    async def _read_record(self, index: int, wall_time_base: float) -> HistoryRecord:
        mode = self._require(self._mode_characteristic, protocol.UUID_CHARACTERISTIC_HISTORY_MODE)
        history = self._require(
            self._history_characteristic, protocol.UUID_CHARACTERISTIC_HISTORY_DATA
        )
        await mode.write(parsing.history_address(index))
        data = await history.read()
        return parsing.parse_history_record(data, wall_time_base)

    async def _query_history(self) -> List[HistoryRecord]:
        logger.info(f"Querying history of {self._device.address}")
        await self._device._connect()
        await guard(self._timeout_s, self._set_history_data_mode(True), "enable history mode")

        estimate = await self._query_time()
        count = await guard(self._timeout_s, self._amount_of_records(), "read history count")

        records: List[HistoryRecord] = []
        for index in range(count):
            record = await guard(
                self._timeout_s,
                self._read_record(index, estimate.wall_time_base),
                f"read history record {index}",
            )
            records.append(record)

        logger.info(f"Read {len(records)} history records from {self._device.address}")
        return records

    async def _clear_history(self) -> None:
        logger.info(f"Erasing history of {self._device.address}")
        await self._set_history_data_mode(True)
        mode = self._require(self._mode_characteristic, protocol.UUID_CHARACTERISTIC_HISTORY_MODE)
        await mode.write(protocol.CLEAR_HISTORY_BUFFER)
