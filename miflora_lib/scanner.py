"""Discovery of Mi Flora devices from BLE advertisements."""

import logging
import time
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from miflora_lib import parsing, protocol
from miflora_lib.device import MiFloraDevice
from miflora_lib.errors import ConnectionFailure
from miflora_lib.transport import BleakTransport, GattTransport

logger = logging.getLogger(__name__)


async def _scan_ble_devices(timeout_s: float) -> Dict[str, Tuple[BLEDevice, AdvertisementData]]:
    """Scan for BLE devices and return them with their advertisement data.

    Raises:
        ConnectionFailure: If the BLE scanner cannot be started
    """
    try:
        devices_adv = await BleakScanner.discover(timeout=timeout_s, return_adv=True)
        logger.debug(f"Scan completed: {len(devices_adv)} devices found")
        return devices_adv
    except (BleakError, OSError) as e:
        raise ConnectionFailure(
            f"BLE scanner initialization failed ({e}). Check that Bluetooth is "
            "enabled and the adapter is available to this process."
        ) from e


def devices_from_scan(
    scan: Dict[str, Tuple[BLEDevice, AdvertisementData]],
    timeout_s: Optional[float] = protocol.DEFAULT_TIMEOUT_S,
    transport_factory: Callable[[BLEDevice], GattTransport] = BleakTransport,
    known: Optional[Mapping[str, MiFloraDevice]] = None,
) -> List[MiFloraDevice]:
    """Build MiFloraDevice objects for every Mi Flora advertisement in a scan result.

    Advertisements without Xiaomi service data, or with an unknown product
    code, are skipped. Addresses already in ``known`` get the existing device
    back with its discovery time refreshed; no new transport is built for them.
    """
    known = known or {}
    found: List[MiFloraDevice] = []
    for ble_device, advertisement in scan.values():
        existing = known.get(parsing.normalise_address(ble_device.address))
        if existing is not None:
            existing.last_discovery = time.time()
            logger.debug(f"Rediscovered {existing.type.value} {existing.address}")
            found.append(existing)
            continue

        device = MiFloraDevice.from_advertisement(
            ble_device,
            advertisement,
            timeout_s=timeout_s,
            transport_factory=transport_factory,
        )
        if device is None:
            continue
        logger.info(
            f"Discovered {device.type.value} {device.address} "
            f"(name={device.name!r}, rssi={getattr(advertisement, 'rssi', None)})"
        )
        found.append(device)
    return found


async def discover(
    scan_timeout_s: float = protocol.DEFAULT_SCAN_TIMEOUT_S,
    timeout_s: Optional[float] = protocol.DEFAULT_TIMEOUT_S,
    transport_factory: Callable[[BLEDevice], GattTransport] = BleakTransport,
    known: Optional[Mapping[str, MiFloraDevice]] = None,
) -> List[MiFloraDevice]:
    """Scan and return every Mi Flora device in range.

    Args:
        scan_timeout_s: Scan duration in seconds
        timeout_s: Operation deadline given to each discovered device
        transport_factory: Builds the transport for each discovered peripheral
        known: Devices by normalised address to return as-is when seen again

    Raises:
        ConnectionFailure: If the BLE scanner cannot be started
    """
    logger.info(f"Scanning for Mi Flora devices ({scan_timeout_s:.0f}s)...")
    scan = await _scan_ble_devices(scan_timeout_s)
    devices = devices_from_scan(
        scan, timeout_s=timeout_s, transport_factory=transport_factory, known=known
    )
    logger.info(f"Found {len(devices)} Mi Flora device(s)")
    return devices


async def find_device(
    address: str,
    scan_timeout_s: float = protocol.DEFAULT_SCAN_TIMEOUT_S,
    timeout_s: Optional[float] = protocol.DEFAULT_TIMEOUT_S,
    transport_factory: Callable[[BLEDevice], GattTransport] = BleakTransport,
) -> Optional[MiFloraDevice]:
    """Scan and return the Mi Flora device with the given address, if advertising."""
    wanted = parsing.normalise_address(address)
    devices = await discover(
        scan_timeout_s=scan_timeout_s, timeout_s=timeout_s, transport_factory=transport_factory
    )
    for device in devices:
        if device.address == wanted:
            return device
    logger.warning(f"Device {wanted} not found")
    return None
