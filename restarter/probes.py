from __future__ import annotations

from threading import Thread
from typing import Protocol

import uvicorn
from fastapi import FastAPI, HTTPException, Query

from .errors import ConfigError
from .events import EventLog


class Worker(Protocol):
    def is_running(self) -> bool: ...


def create_app(worker: Worker, events: EventLog) -> FastAPI:
    app = FastAPI(title="Pod restarter")

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/readyz")
    def readyz() -> dict[str, str]:
        if not worker.is_running():
            raise HTTPException(status_code=503, detail="Reconcile worker is not running")
        return {"status": "ready"}

    @app.get("/events")
    def list_events(limit: int = Query(20, ge=1, le=200)) -> list[dict]:
        return [e.to_dict() for e in events.recent(limit)]

    return app


def parse_bind_address(address: str) -> tuple[str, int] | None:
    """``":8080"`` -> ("0.0.0.0", 8080); ``"0"`` or empty disables the endpoint."""
    address = (address or "").strip()
    if address in {"", "0"}:
        return None
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ConfigError(f"Invalid health probe bind address {address!r}. Use host:port or :port.")
    try:
        port_num = int(port)
    except ValueError:
        raise ConfigError(f"Invalid port in health probe bind address {address!r}.") from None
    if not 1 <= port_num <= 65535:
        raise ConfigError(f"Invalid port in health probe bind address {address!r}.")
    return host.strip("[]") or "0.0.0.0", port_num


class ProbeServer:
    """Runs the probe app on a background thread."""

    def __init__(self, app: FastAPI, host: str, port: int, log_level: str = "warning"):
        self.server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level=log_level.lower(), access_log=False)
        )
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self.server.run, name="probe-server", daemon=True)
        self._thr.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        self.server.should_exit = True
        if self._thr:
            self._thr.join(timeout_s)
