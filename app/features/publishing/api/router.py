"""
Publishing routes.

Inbound webhooks for WhatsApp (Twilio) and email, the live cache
invalidation stream and the publishing health endpoint. Webhooks answer
immediately and do their work in a background task.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import Response, StreamingResponse

from app.config import settings
from app.container import PublishingContainer
from app.features.publishing.api.inbound import (
    InboundEmail,
    handle_inbound_email,
    handle_whatsapp_message,
)
from app.infrastructure.observability.logging import get_logger
from app.security.signatures import (
    TWILIO_SIGNATURE_HEADER,
    SignatureError,
    verify_twilio_signature,
)

logger = get_logger(__name__)

router = APIRouter(tags=["publishing"])

# Twilio sends any text body back to the sender as a reply; empty TwiML sends nothing
EMPTY_TWIML = "<Response/>"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_container(request: Request) -> PublishingContainer:
    container = getattr(request.app.state, "publishing", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Publishing services not initialized")
    return container


def verify_twilio_request(request: Request, params: dict[str, str]) -> None:
    """Reject the request unless its X-Twilio-Signature matches."""
    if not settings.TWILIO_VALIDATE_SIGNATURE:
        return
    if not settings.TWILIO_AUTH_TOKEN:
        logger.warning("Twilio signature validation skipped, TWILIO_AUTH_TOKEN not set")
        return

    url = getattr(request.state, "public_url", None) or str(request.url)
    try:
        valid = verify_twilio_signature(request.headers.get(TWILIO_SIGNATURE_HEADER), url, params)
    except SignatureError as e:
        logger.error("Twilio signature validation error", error=str(e))
        valid = False

    if not valid:
        logger.warning("Invalid Twilio signature", url=url)
        raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/api/whatsapp/webhook", response_class=Response)
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    container: PublishingContainer = Depends(get_container),
):
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    verify_twilio_request(request, params)

    background_tasks.add_task(handle_whatsapp_message, container, params)
    return Response(EMPTY_TWIML, media_type="application/xml")


@router.post("/api/email/webhook")
async def email_webhook(
    email: InboundEmail,
    background_tasks: BackgroundTasks,
    container: PublishingContainer = Depends(get_container),
):
    background_tasks.add_task(handle_inbound_email, container, email)
    return {"ok": True}


@router.get("/api/events/cache")
async def cache_events(container: PublishingContainer = Depends(get_container)):
    """Server-Sent Events stream of cache invalidations."""
    subscriber = container.broadcaster.subscribe()
    return StreamingResponse(
        container.broadcaster.stream(subscriber, keepalive_seconds=settings.SSE_KEEPALIVE_SECONDS),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/health/publishing")
async def publishing_health(container: PublishingContainer = Depends(get_container)):
    job_health = container.aggregator.health_check()
    try:
        pending = await container.store.stats()
    except Exception as e:
        pending = {"error": f"{type(e).__name__}: {e}"}

    return {
        "healthy": job_health["healthy"],
        "aggregator": container.aggregator.get_job_status(),
        "aggregator_health": job_health,
        "pending_submissions": pending,
        "cache": container.cache.stats(),
        "stream": container.broadcaster.stats(),
        "notifier": container.notifier.status(),
        "ai_configured": container.quality_service.configured,
    }
