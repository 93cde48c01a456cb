"""Tests for history retrieval, device time and history clearing."""

import asyncio
from datetime import datetime, timezone
from typing import List

import pytest

from fakes.fake_flora import FakeFlora, FakeRecord
from miflora_lib import protocol
from miflora_lib.device import MiFloraDevice
from miflora_lib.errors import ModeMismatch, OperationTimeout, ReadFailure
from miflora_lib.models import DeviceType, HistoryRecord

HISTORY_MODE_CHAR = protocol.UUID_CHARACTERISTIC_HISTORY_MODE
HISTORY_DATA_CHAR = protocol.UUID_CHARACTERISTIC_HISTORY_DATA


def make_records(count: int) -> List[FakeRecord]:
    return [
        FakeRecord(
            timestamp=3600 * (i + 1),
            temperature=15.0 + i / 10,
            lux=100 * i,
            moisture=30 + i % 20,
            fertility=400 + i,
        )
        for i in range(count)
    ]


def make_device(fake: FakeFlora, timeout_s: float = 1.0) -> MiFloraDevice:
    return MiFloraDevice(
        fake, address=fake.address, device_type=DeviceType.MONITOR, timeout_s=timeout_s
    )


def fixed_clock(*samples: float):
    return iter(samples).__next__


class FailingRecordFlora(FakeFlora):
    """FakeFlora whose history data read fails for one entry index."""

    def __init__(self, fail_index: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.fail_index = fail_index

    def _read_value(self, uuid: str) -> bytes:
        if uuid == HISTORY_DATA_CHAR and self._history_address == self.fail_index:
            raise RuntimeError("GATT error 0x0e")
        return super()._read_value(uuid)


def test_history_reads_every_record_in_index_order() -> None:
    """Test that N records produce N address writes in ascending order."""

    async def scenario() -> None:
        fake = FakeFlora(history=make_records(3))
        device = make_device(fake)

        records = await device.query_history()

        assert [r.timestamp for r in records] == [3600, 7200, 10800]
        assert [r.fertility for r in records] == [400, 401, 402]
        assert fake.writes_to(HISTORY_MODE_CHAR) == [
            protocol.HISTORY_MODE.enable,
            bytes.fromhex("a10000"),
            bytes.fromhex("a10100"),
            bytes.fromhex("a10200"),
        ]
        # Count read plus one read per record
        assert fake.reads_from(HISTORY_DATA_CHAR) == 4

    asyncio.run(scenario())


def test_history_dates_use_epoch_estimate() -> None:
    """Test record dates are timestamp plus host time minus device time."""

    async def scenario() -> List[HistoryRecord]:
        fake = FakeFlora(
            device_time=1000,
            history=[FakeRecord(timestamp=200, temperature=19.5, lux=800, moisture=44, fertility=512)],
        )
        device = make_device(fake)
        device.history._clock = fixed_clock(5000.0, 5010.0)
        return await device.query_history()

    records = asyncio.run(scenario())

    assert len(records) == 1
    assert records[0].timestamp == 200
    assert records[0].temperature == 19.5
    assert records[0].date == datetime.fromtimestamp(4205, tz=timezone.utc)


def test_history_with_no_records() -> None:
    """Test an empty history reads the count and stops."""

    async def scenario() -> None:
        fake = FakeFlora(history=[])
        device = make_device(fake)

        assert await device.query_history() == []
        assert fake.writes_to(HISTORY_MODE_CHAR) == [protocol.HISTORY_MODE.enable]

    asyncio.run(scenario())


def test_history_read_error_aborts_traversal() -> None:
    """Test that a failing entry read aborts without a partial result."""

    async def scenario() -> None:
        fake = FailingRecordFlora(fail_index=2, history=make_records(5))
        device = make_device(fake)

        with pytest.raises(ReadFailure) as exc_info:
            await device.query_history()

        assert exc_info.value.uuid == HISTORY_DATA_CHAR
        # No address written after the failing one
        assert fake.writes_to(HISTORY_MODE_CHAR)[-1] == bytes.fromhex("a10200")

    asyncio.run(scenario())


def test_history_mode_mismatch() -> None:
    """Test that an unconfirmed history mode stops before the count is read."""

    async def scenario() -> None:
        fake = FakeFlora(history=make_records(2))
        fake.mode_echo_override = bytes.fromhex("a000")
        device = make_device(fake)

        with pytest.raises(ModeMismatch) as exc_info:
            await device.query_history()

        assert exc_info.value.written == protocol.HISTORY_MODE.enable
        assert fake.reads_from(HISTORY_DATA_CHAR) == 0

    asyncio.run(scenario())


def test_history_traversal_deadline() -> None:
    """Test the whole traversal is bounded by the history deadline."""

    async def scenario() -> None:
        fake = FakeFlora(history=make_records(30), latency_s=0.01)
        device = make_device(fake, timeout_s=1.0)

        with pytest.raises(OperationTimeout):
            await device.query_history(timeout_s=0.05)

    asyncio.run(scenario())


def test_history_traversal_without_deadline() -> None:
    """Test that a zero history deadline lets a long traversal finish."""

    async def scenario() -> None:
        fake = FakeFlora(history=make_records(30), latency_s=0.01)
        device = make_device(fake, timeout_s=0.2)

        records = await device.query_history(timeout_s=0)

        assert len(records) == 30

    asyncio.run(scenario())


def test_clear_history() -> None:
    """Test clear arms history mode then writes the clear command unverified."""

    async def scenario() -> None:
        fake = FakeFlora(history=make_records(4))
        device = make_device(fake)

        await device.clear_history()

        assert fake.history == []
        assert fake.writes_to(HISTORY_MODE_CHAR) == [
            protocol.HISTORY_MODE.enable,
            protocol.CLEAR_HISTORY_BUFFER,
        ]
        # Only the mode switch is read back
        assert fake.reads_from(HISTORY_MODE_CHAR) == 1
        assert fake.operations[-1][0] == "write"

        assert await device.query_history() == []

    asyncio.run(scenario())


def test_query_history_count() -> None:
    """Test the record count is read after arming history mode."""

    async def scenario() -> None:
        fake = FakeFlora(history=make_records(7))
        device = make_device(fake)

        assert await device.history.query_history_count() == 7
        assert fake.writes_to(HISTORY_MODE_CHAR) == [protocol.HISTORY_MODE.enable]

    asyncio.run(scenario())


def test_query_time() -> None:
    """Test the epoch estimate averages two host samples taken before the read."""

    async def scenario() -> None:
        fake = FakeFlora(device_time=172800)
        device = make_device(fake)
        device.history._clock = fixed_clock(1700000000.0, 1700000002.0)

        estimate = await device.history.query_time()

        assert estimate.device_time == 172800
        assert estimate.host_time == 1700000001.0
        assert estimate.wall_time_base == 1700000001.0 - 172800
        assert estimate.to_datetime(172800) == datetime.fromtimestamp(
            1700000001.0, tz=timezone.utc
        )

    asyncio.run(scenario())


def test_set_history_data_mode_disable() -> None:
    """Test the history disable buffer is written and verified."""

    async def scenario() -> None:
        fake = FakeFlora()
        device = make_device(fake)

        await device.history.set_history_data_mode(False)

        assert fake.writes_to(HISTORY_MODE_CHAR) == [protocol.HISTORY_MODE.disable]

    asyncio.run(scenario())
