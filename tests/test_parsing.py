"""Tests for payload decoding and command buffer construction."""

import struct
from datetime import datetime, timezone

import pytest

from fakes.fake_flora import FakeRecord, encode_history_record, encode_sensor_values
from miflora_lib import parsing, protocol
from miflora_lib.errors import DecodeError
from miflora_lib.models import DeviceType, ModeOutcome


def test_parse_sensor_values() -> None:
    """Test decoding a realtime payload captured from a Flower Care."""
    data = bytes.fromhex("e400005b01000019b302023c00fb3400")

    values = parsing.parse_sensor_values(data)

    assert values.temperature == 22.8
    assert values.lux == 347
    assert values.moisture == 25
    assert values.fertility == 691


def test_parse_sensor_values_negative_temperature() -> None:
    """Test that temperature is signed (frost readings)."""
    data = encode_sensor_values(-3.5, 0, 12, 80)

    values = parsing.parse_sensor_values(data)

    assert values.temperature == -3.5
    assert values.moisture == 12


@pytest.mark.parametrize(
    "payload",
    [
        bytes.fromhex("e400005b0100001902b301"),
        bytes.fromhex("0a0000ffffffff64ffff00"),
        bytes.fromhex("00800012345678000000ff"),
    ],
)
def test_sensor_values_fields_reencode_to_same_bytes(payload: bytes) -> None:
    """Test that re-encoding decoded fields reproduces the bytes at their offsets."""
    values = parsing.parse_sensor_values(payload)

    rebuilt = bytearray(payload)
    struct.pack_into("<h", rebuilt, 0, round(values.temperature * 10))
    struct.pack_into("<I", rebuilt, 3, values.lux)
    rebuilt[7] = values.moisture
    struct.pack_into("<H", rebuilt, 8, values.fertility)

    assert bytes(rebuilt) == payload


def test_parse_sensor_values_short_payload() -> None:
    """Test that a truncated payload raises DecodeError."""
    with pytest.raises(DecodeError):
        parsing.parse_sensor_values(bytes(9))


def test_parse_firmware_info() -> None:
    """Test battery and version decoding."""
    info = parsing.parse_firmware_info(b"\x63\x15" + b"3.2.2")

    assert info.battery == 99
    assert info.firmware == "3.2.2"


def test_parse_firmware_info_strips_padding() -> None:
    """Test that trailing NUL padding is not part of the version."""
    info = parsing.parse_firmware_info(b"\x32\x15" + b"3.1.8\x00\x00")

    assert info.battery == 50
    assert info.firmware == "3.1.8"


def test_parse_firmware_info_short_payload() -> None:
    """Test that a one-byte payload raises DecodeError."""
    with pytest.raises(DecodeError):
        parsing.parse_firmware_info(b"\x63")


def test_parse_serial() -> None:
    """Test serial number is hex of the raw payload."""
    assert parsing.parse_serial(bytes.fromhex("c47c8d6a3e01aabb")) == "c47c8d6a3e01aabb"

    with pytest.raises(DecodeError):
        parsing.parse_serial(b"")


def test_parse_device_time_and_count() -> None:
    """Test u32 device time and u16 record count."""
    assert parsing.parse_device_time(struct.pack("<I", 172800)) == 172800
    assert parsing.parse_history_count(struct.pack("<H", 319) + bytes(14)) == 319

    with pytest.raises(DecodeError):
        parsing.parse_device_time(bytes(3))
    with pytest.raises(DecodeError):
        parsing.parse_history_count(bytes(1))


def test_parse_history_record() -> None:
    """Test history entry decoding with and without a wall time base."""
    payload = encode_history_record(
        FakeRecord(timestamp=200, temperature=18.3, lux=5400, moisture=41, fertility=630)
    )

    record = parsing.parse_history_record(payload)
    assert record.timestamp == 200
    assert record.temperature == 18.3
    assert record.lux == 5400
    assert record.moisture == 41
    assert record.fertility == 630
    assert record.date is None

    dated = parsing.parse_history_record(payload, wall_time_base=4005)
    assert dated.date == datetime.fromtimestamp(4205, tz=timezone.utc)


def test_parse_history_record_short_payload() -> None:
    """Test that a truncated history entry raises DecodeError."""
    with pytest.raises(DecodeError):
        parsing.parse_history_record(bytes(13))


@pytest.mark.parametrize(
    "index, expected",
    [
        (0, "a10000"),
        (1, "a10100"),
        (15, "a10f00"),
        (16, "a11000"),
        (255, "a1ff00"),
    ],
)
def test_history_address(index: int, expected: str) -> None:
    """Test address buffer is prefix, zero-padded hex index, trailing zero byte."""
    assert parsing.history_address(index).hex() == expected


def test_history_address_all_single_byte_indices() -> None:
    """Test every index 0-255 against its textual hex form."""
    for index in range(256):
        expected = bytes.fromhex("a1" + format(index, "02x") + "00")
        assert parsing.history_address(index) == expected


def test_history_address_beyond_one_byte() -> None:
    """Test indices above 255 continue as u16 LE, out of range raises."""
    assert parsing.history_address(256).hex() == "a10001"
    assert parsing.history_address(0x1234).hex() == "a13412"

    with pytest.raises(ValueError):
        parsing.history_address(-1)
    with pytest.raises(ValueError):
        parsing.history_address(protocol.HISTORY_INDEX_MAX + 1)


def test_evaluate_mode_echo() -> None:
    """Test armed only on exact echo; any differing byte is a mismatch."""
    command = protocol.REALTIME_MODE.enable

    assert parsing.evaluate_mode_echo(command, command) == ModeOutcome.ARMED
    assert parsing.evaluate_mode_echo(command, bytearray(command)) == ModeOutcome.ARMED
    assert parsing.evaluate_mode_echo(command, b"") == ModeOutcome.UNARMED
    assert parsing.evaluate_mode_echo(command, command + b"\x00") == ModeOutcome.MISMATCH
    assert parsing.evaluate_mode_echo(command, command[:1]) == ModeOutcome.MISMATCH

    for position in range(len(command)):
        corrupted = bytearray(command)
        corrupted[position] ^= 0x01
        assert parsing.evaluate_mode_echo(command, bytes(corrupted)) == ModeOutcome.MISMATCH


def _service_data(product_id: int) -> dict:
    payload = bytes([0x71, 0x20]) + struct.pack("<H", product_id) + bytes(8)
    return {protocol.UUID_SERVICE_XIAOMI: payload}


def _classify(service_data: dict):
    return parsing.classify_product(parsing.parse_product_id(service_data))


def test_product_classification() -> None:
    """Test product codes 152 and 349 classify, others are ignored."""
    assert _classify(_service_data(152)) == DeviceType.MONITOR
    assert _classify(_service_data(349)) == DeviceType.POT
    assert _classify(_service_data(426)) is None
    assert parsing.classify_product(None) is None


def test_parse_product_id_without_xiaomi_data() -> None:
    """Test advertisements without usable Xiaomi service data."""
    battery_service = "0000180f-0000-1000-8000-00805f9b34fb"

    assert parsing.parse_product_id({}) is None
    assert parsing.parse_product_id({battery_service: b"\x00\x00\x98\x00"}) is None
    assert parsing.parse_product_id({protocol.UUID_SERVICE_XIAOMI: b"\x71\x20\x98"}) is None

    upper = {key.upper(): value for key, value in _service_data(152).items()}
    assert parsing.parse_product_id(upper) == 152


def test_normalise_address() -> None:
    """Test address normalisation to lower-case colon form."""
    assert parsing.normalise_address("C4-7C-8D-6A-3E-01") == "c4:7c:8d:6a:3e:01"
    assert parsing.normalise_address("C4:7C:8D:6A:3E:01") == "c4:7c:8d:6a:3e:01"
