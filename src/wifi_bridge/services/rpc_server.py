"""FastAPI method server with a WebSocket event stream."""

import asyncio
import logging
import uuid
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, field_validator

from wifi_bridge import __version__
from wifi_bridge.core.config import Settings
from wifi_bridge.core.controller import AssociationController
from wifi_bridge.core.models import ConnectionIntent, ScanResultsEvent, SecurityMode
from wifi_bridge.core.platform import ConnectivityBackend

logger = logging.getLogger(__name__)

SCAN_EVENTS_PATH = "/events/onScannedResultsAvailable"


class PermissionsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ask_permissions: bool = Field(True, alias="askPermissions")


class ConnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ssid: str = Field(..., min_length=1, max_length=32)
    password: str | None = Field(None, max_length=63)
    enterprise_certificate: str = Field("WPA2_PSK", alias="enterpriseCertificate")
    bssid: str | None = None
    with_internet: bool = Field(False, alias="withInternet")
    timeout_in_seconds: int | None = Field(None, ge=1, alias="timeoutInSeconds")
    force_compat: bool = Field(False, alias="forceCompat")

    @field_validator("ssid")
    @classmethod
    def validate_ssid(cls, v):
        if not v or len(v.strip()) == 0:
            raise ValueError("SSID cannot be empty")
        return v

    def to_intent(self, default_timeout: float = 30.0) -> ConnectionIntent:
        timeout = self.timeout_in_seconds or default_timeout
        return ConnectionIntent(
            identifier=self.ssid,
            peer_identifier=self.bssid,
            credential=self.password,
            security_mode=SecurityMode.from_wire(self.enterprise_certificate),
            requires_internet_capability=self.with_internet,
            timeout=float(timeout),
        )


class MethodResult(BaseModel):
    result: Any = None


class RpcServer:
    def __init__(
        self,
        settings: Settings,
        controller: AssociationController,
        backend: ConnectivityBackend,
    ):
        self.settings = settings
        self.controller = controller
        self.backend = backend
        self.websockets: dict[str, WebSocket] = {}
        self._websocket_lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

        self.app = FastAPI(
            title="WiFi Bridge",
            version=__version__,
            docs_url="/api/docs" if settings.debug else None,
            redoc_url="/api/redoc" if settings.debug else None,
        )

        self.backend.on_scanned_results(self._on_scanned_results)
        self._setup_routes()
        self._setup_websocket()

    def get_app(self) -> FastAPI:
        return self.app

    def _setup_routes(self):
        @self.app.post("/methods/canStartScan", response_model=MethodResult)
        async def can_start_scan(request: PermissionsRequest | None = None):
            ask = request.ask_permissions if request else True
            can = await asyncio.to_thread(self.backend.can_start_scan, ask)
            return MethodResult(result=int(can))

        @self.app.post("/methods/startScan", response_model=MethodResult)
        async def start_scan():
            return MethodResult(result=await asyncio.to_thread(self.backend.start_scan))

        @self.app.post("/methods/canGetScannedResults", response_model=MethodResult)
        async def can_get_scanned_results(request: PermissionsRequest | None = None):
            ask = request.ask_permissions if request else True
            can = await asyncio.to_thread(self.backend.can_get_scanned_results, ask)
            return MethodResult(result=int(can))

        @self.app.post("/methods/getScannedResults", response_model=MethodResult)
        async def get_scanned_results():
            access_points = await asyncio.to_thread(self.backend.get_scanned_results)
            return MethodResult(result=[ap.model_dump(mode="json") for ap in access_points])

        @self.app.post("/methods/connect", response_model=MethodResult)
        async def connect(request: ConnectRequest):
            logger.info(f"Connection requested to {request.ssid}")
            intent = request.to_intent(self.settings.default_timeout)
            future = await asyncio.to_thread(
                self.controller.connect, intent, force_compat=request.force_compat
            )
            result = await asyncio.wrap_future(future)
            logger.info(f"Connection to {request.ssid} resolved: {result}")
            return MethodResult(result=result)

        @self.app.post("/methods/disconnect", response_model=MethodResult)
        async def disconnect():
            return MethodResult(result=await asyncio.to_thread(self.controller.disconnect))

        @self.app.post("/methods/getCurrentSSID", response_model=MethodResult)
        async def get_current_ssid():
            return MethodResult(result=await asyncio.to_thread(self.backend.current_ssid))

        @self.app.post("/methods/getCurrentIP", response_model=MethodResult)
        async def get_current_ip():
            return MethodResult(result=await asyncio.to_thread(self.backend.current_ip))

        @self.app.get("/api/status")
        async def get_status():
            status = self.controller.status()
            status["capabilities"] = self.backend.capabilities.model_dump()
            return status

    def _setup_websocket(self):
        """Setup WebSocket endpoint."""

        @self.app.websocket(SCAN_EVENTS_PATH)
        async def scanned_results_endpoint(websocket: WebSocket):
            """Stream of scanned access point lists."""
            await websocket.accept()
            self._loop = asyncio.get_running_loop()

            ws_id = str(uuid.uuid4())
            async with self._websocket_lock:
                self.websockets[ws_id] = websocket

            try:
                # Keep connection alive
                while True:
                    data = await websocket.receive_text()
                    if data == "ping":
                        await websocket.send_text("pong")

            except WebSocketDisconnect:
                logger.debug(f"WebSocket disconnected: {ws_id}")
            except Exception as e:
                logger.error(f"WebSocket error: {e}")
            finally:
                async with self._websocket_lock:
                    self.websockets.pop(ws_id, None)

    def _on_scanned_results(self, event: ScanResultsEvent) -> None:
        """Listener invoked by the backend, possibly from its own thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self._broadcast_scan_results(event), loop)

    async def _broadcast_scan_results(self, event: ScanResultsEvent) -> None:
        """Send scan results to every subscriber; an error terminates the stream."""
        if event.error is not None:
            message: Any = {"error": event.error}
        else:
            message = [ap.model_dump(mode="json") for ap in event.access_points]

        async with self._websocket_lock:
            disconnected = []
            for ws_id, websocket in list(self.websockets.items()):
                try:
                    await websocket.send_json(message)
                    if event.error is not None:
                        await websocket.close(code=1011)
                        disconnected.append(ws_id)
                except Exception:
                    disconnected.append(ws_id)

            for ws_id in disconnected:
                self.websockets.pop(ws_id, None)
