"""FastAPI application entry point.

GET *            → liveness text
POST /webhook, / → LINE webhook intake
anything else    → 404
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.channels.line import SIGNATURE_HEADER, get_line_channel
from app.config import get_settings
from app.core.ingress import get_webhook_ingress
from app.core.sweep import get_sweep_scheduler
from app.errors import AuthenticationError, MalformedPayloadError
from app.logging_config import setup_logging
from app.storage.redis import redis_storage

logger = logging.getLogger(__name__)

LIVENESS_TEXT = "LINE Bot is running with Redis!"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: connect storage, run the sweep scheduler."""
    setup_logging()
    settings = get_settings()

    # Keep serving health checks; webhook POSTs fail verification without a secret
    missing = settings.missing_credentials()
    if missing:
        logger.error(
            f"Configuration error: {', '.join(missing)} not set. "
            "Webhook requests will be rejected and the sweep will not deliver."
        )

    await redis_storage.connect()

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = get_sweep_scheduler()
        scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await get_line_channel().close()
    await redis_storage.disconnect()


app = FastAPI(
    title="LineHourlyNotifier",
    description="Hourly LINE notifications for opted-in users",
    lifespan=lifespan,
)


@app.post("/webhook")
@app.post("/")
async def line_webhook(request: Request) -> Response:
    """LINE webhook endpoint.

    - Verify X-Line-Signature over the raw body (401 on failure)
    - Parse the event envelope (500 on failure)
    - Process every event; 500 if any event failed, else 200
    """
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        result = await get_webhook_ingress().handle(body, signature)
    except AuthenticationError:
        logger.error("Signature verification failed")
        return PlainTextResponse("Unauthorized", status_code=status.HTTP_401_UNAUTHORIZED)
    except MalformedPayloadError as e:
        logger.error(f"Webhook processing error: {e}")
        return PlainTextResponse("Error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    if not result.ok:
        logger.error(f"Webhook batch had failures: processed={result.processed} failed={result.failed}")
        return PlainTextResponse("Error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    return PlainTextResponse("OK", status_code=status.HTTP_200_OK)


@app.get("/{full_path:path}")
async def liveness(full_path: str) -> PlainTextResponse:
    """Health probe on any GET path."""
    return PlainTextResponse(LIVENESS_TEXT)


@app.api_route(
    "/{full_path:path}",
    methods=["HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE", "CONNECT"],
)
async def not_found(full_path: str) -> PlainTextResponse:
    """Every other method/path combination."""
    return PlainTextResponse("Not Found", status_code=status.HTTP_404_NOT_FOUND)


@app.exception_handler(StarletteHTTPException)
async def method_not_allowed_as_not_found(request: Request, exc: StarletteHTTPException) -> Response:
    """Methods outside the list above reach the router as 405; answer 404."""
    if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        return PlainTextResponse("Not Found", status_code=status.HTTP_404_NOT_FOUND)
    return await http_exception_handler(request, exc)
