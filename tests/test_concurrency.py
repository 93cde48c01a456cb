"""Tests for per-device operation ordering and deadlines under concurrency."""

import asyncio

import pytest

from fakes.fake_flora import FakeFlora, FakeRecord
from miflora_lib import protocol
from miflora_lib.device import MiFloraDevice
from miflora_lib.errors import OperationTimeout
from miflora_lib.models import ConnectionState, DeviceType, SensorValues


def make_device(fake: FakeFlora, timeout_s: float = 1.0) -> MiFloraDevice:
    return MiFloraDevice(
        fake, address=fake.address, device_type=DeviceType.MONITOR, timeout_s=timeout_s
    )


def test_operations_on_one_device_do_not_interleave() -> None:
    """Test concurrent sensor and history queries never overlap on the wire."""

    async def scenario() -> None:
        history = [FakeRecord(3600 * i, 20.0, 10 * i, 40, 300) for i in range(5)]
        fake = FakeFlora(history=history, latency_s=0.005)
        device = make_device(fake)

        values, records, info = await asyncio.gather(
            device.query_sensor_values(),
            device.query_history(),
            device.query_firmware_info(),
        )

        assert fake.max_in_flight == 1
        assert values.lux == fake.lux
        assert len(records) == 5
        assert info.battery == fake.battery
        assert fake.connect_calls == 1

    asyncio.run(scenario())


def test_operations_run_in_call_order() -> None:
    """Test queued operations on one device run in the order they were issued."""

    async def scenario() -> None:
        fake = FakeFlora(latency_s=0.005)
        device = make_device(fake)

        await asyncio.gather(device.query_serial(), device.query_sensor_values())

        assert fake.writes_to(protocol.UUID_CHARACTERISTIC_MODE) == [
            protocol.MODE_BUFFER_SERIAL,
            protocol.REALTIME_MODE.enable,
        ]

    asyncio.run(scenario())


def test_distinct_devices_run_independently() -> None:
    """Test that a slow device does not hold up another device."""

    async def scenario() -> None:
        slow_fake = FakeFlora(address="c4:7c:8d:00:00:01", latency_s=0.2)
        fast_fake = FakeFlora(address="c4:7c:8d:00:00:02")
        slow = make_device(slow_fake, timeout_s=5.0)
        fast = make_device(fast_fake)

        slow_task = asyncio.ensure_future(slow.query_sensor_values())
        await asyncio.sleep(0)

        loop = asyncio.get_running_loop()
        start = loop.time()
        await fast.query_sensor_values()
        assert loop.time() - start < 0.15
        assert not slow_task.done()

        await slow_task

    asyncio.run(scenario())


def test_timed_out_operation_holds_device_until_finished() -> None:
    """Test the next operation waits for an abandoned one before touching the device."""

    async def scenario() -> None:
        fake = FakeFlora()
        device = make_device(fake, timeout_s=0.2)
        await device.connect()
        fake.read_delays[protocol.UUID_CHARACTERISTIC_FIRMWARE] = 0.3

        with pytest.raises(OperationTimeout):
            await device.query_firmware_info()

        fake.read_delays.clear()
        device._timeout_s = 1.0
        await device.query_sensor_values()

        # The late firmware read completed before the mode write started
        ops = [(op, uuid) for op, uuid, _ in fake.operations]
        assert ops[0] == ("read", protocol.UUID_CHARACTERISTIC_FIRMWARE)
        assert ops[1] == ("write", protocol.UUID_CHARACTERISTIC_MODE)
        assert fake.max_in_flight == 1
        # Settled in time, so the session was kept
        assert fake.discover_calls == 1

    asyncio.run(scenario())


def test_hung_exchange_does_not_lock_device() -> None:
    """Test a read that never completes releases the device after one more deadline."""

    async def scenario() -> None:
        fake = FakeFlora()
        device = make_device(fake, timeout_s=0.1)
        await device.connect()
        fake.read_delays[protocol.UUID_CHARACTERISTIC_FIRMWARE] = 3600

        with pytest.raises(OperationTimeout):
            await device.query_firmware_info()

        fake.read_delays.clear()
        values = await asyncio.wait_for(device.query_sensor_values(), 2.0)

        assert values.lux == fake.lux
        # Handles were dropped and resolved again on the same link
        assert fake.connect_calls == 1
        assert fake.discover_calls == 2

        await asyncio.wait_for(device.disconnect(), 2.0)
        assert device.state == ConnectionState.DISCONNECTED
        assert not fake.is_connected

    asyncio.run(scenario())


def test_late_result_is_not_delivered_to_next_operation() -> None:
    """Test a stale read result is discarded and the next query gets fresh data."""

    async def scenario() -> None:
        fake = FakeFlora(temperature=10.0)
        device = make_device(fake, timeout_s=0.05)
        await device.connect()
        fake.read_delays[protocol.UUID_CHARACTERISTIC_DATA] = 0.1

        with pytest.raises(OperationTimeout):
            await device.query_sensor_values()

        fake.read_delays.clear()
        fake.temperature = 30.0
        device._timeout_s = 1.0

        values = await device.query_sensor_values()

        assert values == SensorValues(
            temperature=30.0, lux=fake.lux, moisture=fake.moisture, fertility=fake.fertility
        )

    asyncio.run(scenario())
