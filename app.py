from contextlib import asynccontextmanager
from typing import Optional
import json
import os

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import ValidationError

from auth import IdentityVerifier
from backend import RedisBackend, create_redis_client
from constants import CLIENT_URL, JWT_SECRET
from errors import AuthenticationError, PersistenceError
from gateway import PresenceGateway
from logging_config import get_logger, setup_logging
from routers.health import health_router
from routers.messages import messages_router
from routers.users import users_router
from schemas.messages import Frame

logger = get_logger(__name__)


def _credential(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    """Bearer credential from the ``token`` query parameter or the Authorization header."""
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


def create_app(redis_client=None, jwt_secret: str = JWT_SECRET) -> FastAPI:
    store = RedisBackend(redis_client if redis_client is not None else create_redis_client())
    verifier = IdentityVerifier(store, secret=jwt_secret)
    gateway = PresenceGateway(store, verifier)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await store.ping()
        except PersistenceError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise
        yield
        await store.close()
        logger.info("Redis client closed")

    app = FastAPI(lifespan=lifespan)
    app.state.store = store
    app.state.verifier = verifier
    app.state.gateway = gateway

    allowed_origins = ["*"] if CLIENT_URL == "*" else [CLIENT_URL]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=allowed_origins != ["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request, exc: StarletteHTTPException):
        # Same envelope as successful responses: {"success": false, "message": ...}
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    app.include_router(health_router)
    app.include_router(messages_router)
    app.include_router(users_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
        """Realtime endpoint.

        Query parameters:
        - token: bearer credential (an ``Authorization: Bearer`` header works too)

        Frames in both directions are JSON text ``{"event": ..., "data": ...}``.
        """
        try:
            identity = await gateway.authenticate(_credential(websocket, token))
        except AuthenticationError as e:
            logger.info(f"WebSocket connection rejected: {e}")
            await websocket.close(code=1008, reason=str(e))
            return

        await websocket.accept()
        connection = await gateway.connect(websocket, identity)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
                data = message.get("text")
                if data is None:
                    logger.debug(f"Ignoring non-text frame from connection {connection.id}")
                    continue
                try:
                    frame = Frame.model_validate(json.loads(data))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.debug(f"Ignoring malformed frame from connection {connection.id}: {e}")
                    continue
                # Awaited in order, so one connection's events are handled FIFO
                await gateway.handle_event(connection, frame.event, frame.data)
        except WebSocketDisconnect:
            logger.debug(f"WebSocket disconnected normally for connection {connection.id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.id}: {e}", exc_info=True)
        finally:
            await gateway.disconnect(connection)
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


# Setup logging
setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE", None))
app = create_app()
