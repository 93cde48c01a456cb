"""FastAPI REST interface for Mi Flora plant sensors.

Single-process registry of the devices found by the last scans. Every
device keeps its own BLE session; requests for one device queue behind
each other, requests for different devices run independently.

Error mapping:
- OperationTimeout → 504
- ConnectionFailure → 503
- CharacteristicResolutionError, ModeMismatch, ReadFailure, WriteFailure,
  DecodeError → 502
- Unknown device → 404
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from miflora_lib import MiFloraDevice, __version__, scanner
from miflora_lib.errors import (
    CharacteristicResolutionError,
    ConnectionFailure,
    DecodeError,
    MiFloraError,
    ModeMismatch,
    OperationTimeout,
    ReadFailure,
    WriteFailure,
)
from miflora_lib.models import DeviceReport, HistoryRecord
from miflora_lib.parsing import normalise_address

# =============================================================================
# Environment Configuration
# =============================================================================

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "9160"))
SCAN_TIMEOUT_S = float(os.getenv("SCAN_TIMEOUT_S", "10"))
DEVICE_TIMEOUT_S = float(os.getenv("DEVICE_TIMEOUT_S", "10"))
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000"
).split(",")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Device Registry
# =============================================================================

# Keyed by normalised address
_devices: Dict[str, MiFloraDevice] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log configuration on startup, disconnect every device on shutdown."""
    logger.info("=" * 60)
    logger.info("Mi Flora API started")
    logger.info(f"Version: {__version__}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Scan timeout: {SCAN_TIMEOUT_S}s, device timeout: {DEVICE_TIMEOUT_S}s")
    logger.info("=" * 60)

    yield

    logger.info("Shutting down Mi Flora API...")
    for device in list(_devices.values()):
        if device.is_connected:
            logger.info(f"Disconnecting {device.address}...")
            try:
                await device.disconnect()
            except MiFloraError as e:
                logger.error(f"Error disconnecting {device.address} during shutdown: {e}")
    logger.info("Shutdown complete")


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Mi Flora API",
    description="REST interface for Xiaomi Mi Flora (Flower Care / Flower Pot) sensors",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_404_requests(request: Request, call_next):
    """Log all 404 responses to help debug missing routes and unknown devices."""
    response = await call_next(request)
    if response.status_code == 404:
        logger.warning(f"404 NOT FOUND: {request.method} {request.url.path}")
    return response

# =============================================================================
# Request/Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Response for GET /health."""
    service: str
    status: str
    version: str
    devices: int


class DeviceSummary(BaseModel):
    """One registered device."""
    address: str
    name: Optional[str]
    type: str
    state: str


class StateResponse(BaseModel):
    """Response for connect/disconnect."""
    address: str
    state: str


class FirmwareInfoModel(BaseModel):
    battery: int
    firmware: str


class SensorValuesModel(BaseModel):
    temperature: float
    lux: int
    moisture: int
    fertility: int


class DeviceReportResponse(BaseModel):
    """Query results enveloped with the device identity."""
    address: str
    type: str
    firmware_info: Optional[FirmwareInfoModel] = None
    sensor_values: Optional[SensorValuesModel] = None
    serial: Optional[str] = None


class HistoryRecordModel(BaseModel):
    timestamp: int
    temperature: float
    lux: int
    moisture: int
    fertility: int
    date: Optional[datetime] = None


class HistoryResponse(BaseModel):
    """Response for GET /devices/{address}/history."""
    address: str
    type: str
    count: int
    records: List[HistoryRecordModel]


def _summary(device: MiFloraDevice) -> DeviceSummary:
    return DeviceSummary(
        address=device.address,
        name=device.name,
        type=device.type.value,
        state=device.state.value,
    )


def _report_response(report: DeviceReport) -> DeviceReportResponse:
    return DeviceReportResponse(
        address=report.address,
        type=report.type.value,
        firmware_info=(
            FirmwareInfoModel(**asdict(report.firmware_info)) if report.firmware_info else None
        ),
        sensor_values=(
            SensorValuesModel(**asdict(report.sensor_values)) if report.sensor_values else None
        ),
        serial=report.serial,
    )


def _history_response(device: MiFloraDevice, records: List[HistoryRecord]) -> HistoryResponse:
    return HistoryResponse(
        address=device.address,
        type=device.type.value,
        count=len(records),
        records=[HistoryRecordModel(**asdict(record)) for record in records],
    )


def _get_device(address: str) -> MiFloraDevice:
    device = _devices.get(normalise_address(address))
    if device is None:
        raise HTTPException(
            status_code=404,
            detail=f"Device {address} not found. Run POST /scan first."
        )
    return device

# =============================================================================
# Exception Handlers
# =============================================================================

_ERROR_STATUS = {
    OperationTimeout: 504,
    ConnectionFailure: 503,
    CharacteristicResolutionError: 502,
    ModeMismatch: 502,
    ReadFailure: 502,
    WriteFailure: 502,
    DecodeError: 502,
}


@app.exception_handler(MiFloraError)
async def miflora_error_handler(request: Request, exc: MiFloraError):
    """Map library errors to HTTP status codes."""
    status_code = _ERROR_STATUS.get(type(exc), 500)
    logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )

# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health():
    """Service liveness and number of registered devices."""
    return HealthResponse(
        service="Mi Flora API",
        status="online",
        version=__version__,
        devices=len(_devices),
    )


@app.post("/scan", response_model=List[DeviceSummary])
async def scan(timeout_s: float = Query(SCAN_TIMEOUT_S, gt=0, le=60)):
    """Scan for Mi Flora devices and register the ones found.

    Devices already registered keep their session (and connection).
    """
    logger.info(f"[SCAN] Request: timeout_s={timeout_s}")
    found = await scanner.discover(
        scan_timeout_s=timeout_s, timeout_s=DEVICE_TIMEOUT_S, known=_devices
    )

    for device in found:
        _devices.setdefault(device.address, device)

    logger.info(f"[SCAN] Found {len(found)} device(s), {len(_devices)} registered")
    return [_summary(device) for device in found]


@app.get("/devices", response_model=List[DeviceSummary])
async def list_devices():
    """List every registered device with its connection state."""
    return [_summary(device) for device in _devices.values()]


@app.post("/devices/{address}/connect", response_model=StateResponse)
async def connect_device(address: str):
    """Connect to a device and resolve its characteristics."""
    device = _get_device(address)
    await device.connect()
    return StateResponse(address=device.address, state=device.state.value)


@app.post("/devices/{address}/disconnect", response_model=StateResponse)
async def disconnect_device(address: str):
    """Disconnect from a device."""
    device = _get_device(address)
    await device.disconnect()
    return StateResponse(address=device.address, state=device.state.value)


@app.get("/devices/{address}", response_model=DeviceReportResponse)
async def query_device(address: str):
    """Read firmware info and current sensor values."""
    device = _get_device(address)
    return _report_response(await device.query())


@app.get("/devices/{address}/firmware", response_model=DeviceReportResponse)
async def query_firmware(address: str):
    """Read battery level and firmware version."""
    device = _get_device(address)
    info = await device.query_firmware_info()
    return _report_response(device.report(firmware_info=info))


@app.get("/devices/{address}/sensor", response_model=DeviceReportResponse)
async def query_sensor(address: str):
    """Read current temperature, light, moisture and fertility."""
    device = _get_device(address)
    values = await device.query_sensor_values()
    return _report_response(device.report(sensor_values=values))


@app.get("/devices/{address}/serial", response_model=DeviceReportResponse)
async def query_serial(address: str):
    """Read the device serial number."""
    device = _get_device(address)
    serial = await device.query_serial()
    return _report_response(device.report(serial=serial))


@app.get("/devices/{address}/history", response_model=HistoryResponse)
async def query_history(
    address: str,
    timeout_s: Optional[float] = Query(
        None, description="Deadline for the whole download; 0 disables it"
    ),
):
    """Download every stored hourly history record."""
    device = _get_device(address)
    logger.info(f"[HISTORY] Request: address={device.address}, timeout_s={timeout_s}")
    records = await device.query_history(timeout_s=timeout_s)
    return _history_response(device, records)


@app.delete("/devices/{address}/history", response_model=StateResponse)
async def clear_history(address: str):
    """Erase stored history on the device."""
    device = _get_device(address)
    await device.clear_history()
    logger.info(f"[HISTORY] Cleared history of {device.address}")
    return StateResponse(address=device.address, state=device.state.value)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
