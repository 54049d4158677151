#!/usr/bin/env python3
"""WiFi Bridge method server."""

import argparse
import asyncio
import logging
import os
import socket
import sys
from logging.handlers import RotatingFileHandler

import uvicorn

from wifi_bridge.core.config import Settings, get_settings
from wifi_bridge.core.controller import AssociationController
from wifi_bridge.core.platform import ConnectivityBackend, select_backend
from wifi_bridge.paths import get_log_dir
from wifi_bridge.services.rpc_server import RpcServer


def setup_logging(debug: bool = False):
    log_level = logging.DEBUG if debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
    ]

    # Add file handler if we have write permissions
    try:
        log_dir = get_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_dir / "wifi-bridge.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(log_format))
        handlers.append(file_handler)
    except (PermissionError, OSError) as e:
        print(f"Warning: Could not create log file: {e}", file=sys.stderr)

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
        force=True,
    )


logger = logging.getLogger(__name__)


def check_port_available(host: str, port: int) -> bool:
    """Test if port can be bound on specified host."""
    try:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        with socket.socket(family, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
            return True
    except OSError:
        return False


def find_available_port(host: str, start_port: int, max_attempts: int = 10) -> int | None:
    """Find first available port in range [start_port, start_port + max_attempts)."""
    for port in range(start_port, start_port + max_attempts):
        if check_port_available(host, port):
            return port
    return None


class WiFiBridgeApp:
    def __init__(self, settings: Settings | None = None, backend: ConnectivityBackend | None = None):
        self.settings = settings or get_settings()
        self.backend = backend or select_backend(self.settings)
        self.controller = AssociationController(self.backend)
        self.rpc_server = RpcServer(self.settings, self.controller, self.backend)
        self.server: uvicorn.Server | None = None

    async def run(self):
        logger.info("Starting WiFi Bridge...")

        try:
            await asyncio.to_thread(self.backend.start)
            await self.run_web_server()
        except Exception as e:
            logger.error(f"Application error: {e}")
            raise
        finally:
            await self.shutdown()

    async def run_web_server(self):
        uvicorn_logger = logging.getLogger("uvicorn.error")
        if not self.settings.debug:
            uvicorn_logger.setLevel(logging.ERROR)

        host = self.settings.web_host
        selected_port = find_available_port(host, self.settings.web_port, max_attempts=10)

        if selected_port is None:
            logger.critical(
                f"No available ports found in range {self.settings.web_port}-"
                f"{self.settings.web_port + 9} on host {host}. Cannot start method server."
            )
            raise RuntimeError(
                f"Port conflict: all ports {self.settings.web_port}-"
                f"{self.settings.web_port + 9} are occupied"
            )

        if selected_port != self.settings.web_port:
            logger.warning(
                f"Port {self.settings.web_port} in use, using port {selected_port} instead"
            )
            self.settings.web_port = selected_port

        logger.info(f"Method server listening on {self.settings.get_base_url()}")

        config = uvicorn.Config(
            app=self.rpc_server.get_app(),
            host=host,
            port=selected_port,
            log_level="info" if self.settings.debug else "error",
            access_log=self.settings.debug,
        )
        self.server = uvicorn.Server(config)
        await self.server.serve()

    async def shutdown(self):
        logger.info("Shutting down...")

        if self.server:
            self.server.should_exit = True

        try:
            await asyncio.to_thread(self.controller.disconnect)
        except Exception as e:
            logger.error(f"Error tearing down association: {e}")

        try:
            await asyncio.to_thread(self.backend.close)
        except Exception as e:
            logger.error(f"Error stopping backend: {e}")

        logger.info("Shutdown complete")


def main():
    parser = argparse.ArgumentParser(description="WiFi Bridge method server")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--host", type=str, help="Method server host")
    parser.add_argument("--port", type=int, help="Method server port (default: 8765)")
    parser.add_argument("--interface", type=str, help="WiFi interface to manage")
    parser.add_argument(
        "--backend", choices=["auto", "nmcli", "none"], help="Connectivity backend"
    )

    args = parser.parse_args()
    settings = get_settings()

    if args.debug:
        settings.debug = True
    setup_logging(debug=settings.debug)

    if args.host:
        settings.web_host = args.host
    if args.port:
        settings.web_port = args.port
    if args.interface:
        settings.wifi_interface = args.interface
    if args.backend:
        settings.backend = args.backend

    if os.geteuid() != 0:
        logger.warning("Not running as root - NetworkManager may refuse some operations")

    app = WiFiBridgeApp(settings)

    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
