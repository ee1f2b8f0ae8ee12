"""Lamela Gateway: standalone relay server.

Exposes:
  WS   /  and /ws              - browser + controller relay
  GET  /health                 - liveness check with session counts
  GET  /browsers               - live sessions and persisted browser records
  GET  /browsers/{code}        - one browser

Start with::

    python -m lamela.server
    # or
    uvicorn lamela.server:app --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, WebSocket

from lamela import __version__
from lamela.browsers.store import BrowserStore
from lamela.browsers.websocket import Gateway
from lamela.config import GatewaySettings
from lamela.db import init_db, set_db_path

logger = logging.getLogger(__name__)


def create_app(
    settings: GatewaySettings | None = None,
    gateway: Gateway | None = None,
) -> FastAPI:
    """Build the FastAPI app around a gateway (constructed from settings if omitted)."""
    settings = settings or GatewaySettings.from_env()
    if gateway is None:
        gateway = Gateway.from_settings(settings, store=BrowserStore())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if gateway.store is not None:
            init_db()
            reset = gateway.store.mark_all_offline()
            if reset:
                logger.info("Marked %d stale browser record(s) offline", reset)
        await gateway.start()
        try:
            yield
        finally:
            await gateway.stop()

    app = FastAPI(title="Lamela Gateway", version=__version__, lifespan=lifespan)
    app.state.gateway = gateway
    app.state.settings = settings

    async def relay(websocket: WebSocket):
        await gateway.serve(websocket)

    app.add_api_websocket_route("/", relay)
    app.add_api_websocket_route("/ws", relay)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "sessions": len(gateway.registry),
            "pending_commands": len(gateway.correlator),
            "connections": gateway.connection_count,
        }

    @app.get("/browsers")
    async def list_browsers():
        online = [s.to_dict() for s in gateway.registry.list()]
        known = gateway.store.list_browsers() if gateway.store is not None else []
        return {"online": online, "known": known, "total_online": len(online)}

    @app.get("/browsers/{access_code}")
    async def get_browser(access_code: str):
        session = gateway.registry.get(access_code)
        record = gateway.store.get_browser(access_code) if gateway.store is not None else None
        if session is None and record is None:
            raise HTTPException(status_code=404, detail="Browser not found")
        return {
            "accessCode": access_code,
            "connected": session is not None,
            "session": session.to_dict() if session else None,
            "record": record,
        }

    return app


app = create_app()


def main():
    import uvicorn
    settings = GatewaySettings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    data_dir = Path(settings.data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    set_db_path(data_dir / "lamela.db")
    logger.info("Starting Lamela Gateway on %s:%d", settings.host, settings.port)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
