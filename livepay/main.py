import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from livepay.config import configure_logging, webhook_secret
from livepay.database import create_schema, engine, get_session
from livepay.errors import (
    ConfigError,
    CorrectnessError,
    InvalidPayload,
    InvalidSignature,
)
from livepay.routes import router
from livepay.verifier import verify_event
from livepay.webhooks import dispatch_event

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    configure_logging()
    await create_schema(engine)
    yield
    await engine.dispose()


app = FastAPI(title="Live Shopping Payment Service", lifespan=lifespan)

app.include_router(router)


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: AsyncSession = Depends(get_session),
):
    payload = await request.body()

    try:
        event = verify_event(payload, stripe_signature, webhook_secret())
    except ConfigError:
        return JSONResponse({"error": "Webhook secret not configured"}, status_code=401)
    except InvalidSignature:
        return JSONResponse({"error": "Invalid signature"}, status_code=400)
    except InvalidPayload:
        return JSONResponse({"error": "Invalid payload"}, status_code=400)

    try:
        await dispatch_event(db, event)
    except CorrectnessError as exc:
        logger.error("Webhook processing failed", extra={
            "event_id": event.id, "event_type": event.type,
            "error": exc.tag, **exc.context,
        })
        return JSONResponse(
            {"error": exc.tag, "event_id": event.id, "message": str(exc)},
            status_code=500,
        )
    except Exception:
        logger.exception("Unexpected webhook error", extra={
            "event_id": event.id, "event_type": event.type})
        return JSONResponse(
            {"error": "internal_error", "event_id": event.id},
            status_code=500,
        )

    return {"received": True, "event_id": event.id}
