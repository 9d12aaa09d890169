import asyncio
import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect

from drainapp.config import settings
from drainapp.health import router as health_router
from drainapp.logging_config import setup_logging
from drainapp.management import get_registry, router as management_router
from drainapp.metrics import MetricsMiddleware, metrics_response, set_deployment_info
from drainapp.sessions import QueueChannel, Session, SessionRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(f"Starting server (slot {settings.APP_SLOT})")
    app.state.registry = SessionRegistry(
        settings.APP_SLOT, settings.SLOT_COOKIE, settings.MIGRATION_COOKIE
    )
    set_deployment_info(settings.APP_SLOT, settings.APP_VERSION)
    logger.info(f"Server ready on port {settings.PORT}")
    yield
    logger.info("Server shutting down gracefully")
    app.state.registry.close()


app = FastAPI(title="Blue-Green Drain-Aware Server", version=settings.APP_VERSION, lifespan=lifespan)
app.add_middleware(MetricsMiddleware)
app.include_router(health_router)
app.include_router(management_router)


@app.get("/")
async def index():
    return {"app": "drainapp", "slot": settings.APP_SLOT, "version": settings.APP_VERSION}


@app.websocket("/session")
async def session_socket(websocket: WebSocket, registry: SessionRegistry = Depends(get_registry)):
    """
    One attached client session.

    Client -> server: {"action": "pin"}      enter a critical phase, stay on this slot
                      {"action": "upgrade"}  accept the new version now
                      {"action": "status"}
    Server -> client: attached, welcome, pinned, new-version, migrate, status, error
    """
    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    session = Session(channel=QueueChannel(asyncio.get_running_loop(), queue))
    registry.register(session)

    try:
        await websocket.send_json(
            {"event": "attached", "session_id": session.id, "slot": registry.slot}
        )
        registry.greet(session, websocket.cookies.get(registry.migration_cookie))

        async def pump_events():
            while True:
                event = await queue.get()
                await websocket.send_json(event)

        async def handle_actions():
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    message = None
                action = message.get("action") if isinstance(message, dict) else None

                if action == "pin":
                    if not registry.pin(session):
                        queue.put_nowait({"event": "error", "detail": "session is already migrating"})
                elif action == "upgrade":
                    registry.self_migrate(session)
                elif action == "status":
                    queue.put_nowait(
                        {
                            "event": "status",
                            "session_id": session.id,
                            "state": session.state.value,
                            "pinned": session.pinned,
                        }
                    )
                else:
                    queue.put_nowait({"event": "error", "detail": f"unknown action {action!r}"})

        tasks = {
            asyncio.create_task(pump_events()),
            asyncio.create_task(handle_actions()),
        }
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    except WebSocketDisconnect:
        pass
    finally:
        registry.unregister(session)


@app.get("/metrics")
async def metrics():
    return metrics_response()


def run() -> None:
    uvicorn.run(
        "drainapp.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
