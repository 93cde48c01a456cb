#!/usr/bin/env python3
"""
Runbook: Mi Flora Query + History Download
Expected: device found, firmware and live values printed, full history listed
"""

import asyncio
import logging
import os

from miflora_lib import MiFloraDevice, MiFloraError, discover, find_device

# ============================================================================
# CONFIGURATION - EDIT THIS
# ============================================================================
DEVICE_ADDRESS = None  # e.g. "C4:7C:8D:6A:3E:01"; None uses the first device found
SCAN_TIMEOUT_S = 10.0
DEVICE_TIMEOUT_S = 10.0
HISTORY_TIMEOUT_S = 600.0  # a full history is several hundred round trips
CLEAR_HISTORY = False

# ============================================================================
# TEST SCRIPT - DO NOT EDIT BELOW
# ============================================================================

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "WARNING").upper(), logging.WARNING),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


async def select_device() -> MiFloraDevice:
    if DEVICE_ADDRESS:
        device = await find_device(
            DEVICE_ADDRESS, scan_timeout_s=SCAN_TIMEOUT_S, timeout_s=DEVICE_TIMEOUT_S
        )
        if device is None:
            raise SystemExit(f"Device {DEVICE_ADDRESS} not found")
        return device

    devices = await discover(scan_timeout_s=SCAN_TIMEOUT_S, timeout_s=DEVICE_TIMEOUT_S)
    for device in devices:
        print(f"      {device.address}  {device.type.value:<15} {device.name}")
    if not devices:
        raise SystemExit("No Mi Flora devices found")
    return devices[0]


async def main() -> None:
    print("=" * 70)
    print("Mi Flora Runbook: Query + History")
    print("=" * 70)
    print(f"Scan timeout: {SCAN_TIMEOUT_S}s")
    print(f"Device timeout: {DEVICE_TIMEOUT_S}s")
    print(f"History timeout: {HISTORY_TIMEOUT_S}s")
    print()

    # Step 1: Discover
    print("[1/4] Scanning for devices...")
    device = await select_device()
    print(f"      Using {device.address} ({device.type.value})")
    print()

    try:
        # Step 2: Firmware and live values
        print("[2/4] Querying firmware info and sensor values...")
        report = await device.query()
        serial = await device.query_serial()
        print(f"      Battery: {report.firmware_info.battery}%")
        print(f"      Firmware: {report.firmware_info.firmware}")
        print(f"      Serial: {serial}")
        print(f"      Temperature: {report.sensor_values.temperature:.1f} °C")
        print(f"      Light: {report.sensor_values.lux} lux")
        print(f"      Moisture: {report.sensor_values.moisture}%")
        print(f"      Fertility: {report.sensor_values.fertility} µS/cm")
        print()

        # Step 3: History
        print("[3/4] Downloading history...")
        estimate = await device.history.query_time()
        print(f"      Device time: {estimate.device_time}s "
              f"(started {estimate.to_datetime(0).isoformat()})")
        records = await device.query_history(timeout_s=HISTORY_TIMEOUT_S)
        print(f"      Records: {len(records)}")
        for record in records:
            date = record.date.isoformat() if record.date else "?"
            print(f"      {date}  {record.temperature:5.1f} °C  {record.lux:6d} lux  "
                  f"{record.moisture:3d}%  {record.fertility:5d} µS/cm")
        print()

        # Step 4: Optional clear
        if CLEAR_HISTORY:
            print("[4/4] Clearing history...")
            await device.clear_history()
            print(f"      Stored records now: {await device.history.query_history_count()}")
        else:
            print("[4/4] Skipping history clear (CLEAR_HISTORY = False)")

        print()
        print("✓ PASS: Device queried and history downloaded")

    except MiFloraError as e:
        print(f"✗ FAIL: {type(e).__name__}: {e}")

    finally:
        await device.disconnect()
        print()
        print("Disconnected.")
        print("=" * 70)


if __name__ == "__main__":
    asyncio.run(main())
