"""
Inbound channel adapters.

Translate a Twilio WhatsApp webhook or an inbound email payload into an
InboundFragment: find the token, store attachments, decide whether to
force-flush, then hand the fragment to the ingestor. These run after the
webhook has already answered, so every failure is logged here.
"""

import base64
import binascii
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field

from app.container import PublishingContainer
from app.features.publishing.domain import Channel, InboundFragment
from app.features.publishing.pipeline.text import (
    extract_token,
    normalize_email,
    remove_token,
    should_force_process,
)
from app.features.publishing.repository import SubmissionBusyError
from app.infrastructure.observability.logging import get_logger, mask_address
from app.services.media_store import MediaStoreError, is_image
from app.services.notifier import strip_whatsapp_prefix

logger = get_logger(__name__)

MAX_TWILIO_MEDIA = 10


class EmailAttachment(BaseModel):
    filename: str = "attachment"
    content: str = ""
    content_type: str = "application/octet-stream"


class InboundEmail(BaseModel):
    """JSON body posted by the inbound-parse provider."""

    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from", min_length=1)
    subject: str = ""
    text: str = ""
    attachments: list[EmailAttachment] = Field(default_factory=list)


def whatsapp_sender(params: Mapping[str, str]) -> str:
    """Sender phone number without the whatsapp: prefix or spacing."""
    return "".join(strip_whatsapp_prefix(params.get("From", "")).split())


async def collect_twilio_media(container: PublishingContainer, params: Mapping[str, str]) -> list[str]:
    """
    Download every attachment Twilio listed and store it.

    Only image URLs are returned; other files are stored privately but are
    not attached to the article. One failed attachment never drops the rest.
    """
    try:
        count = min(int(params.get("NumMedia") or 0), MAX_TWILIO_MEDIA)
    except ValueError:
        count = 0

    image_urls: list[str] = []
    for index in range(count):
        media_url = params.get(f"MediaUrl{index}")
        if not media_url:
            continue

        try:
            downloaded = await container.media_downloader.download(
                media_url, index, params.get(f"MediaContentType{index}")
            )
            stored = await container.media_store.upload(
                downloaded.data,
                downloaded.file_name,
                downloaded.content_type,
                prefix="whatsapp",
            )
        except MediaStoreError as e:
            logger.warning(
                "Skipping WhatsApp attachment",
                index=index,
                operation=e.operation,
                error=str(e),
            )
            continue

        if stored.is_public:
            image_urls.append(stored.url)

    return image_urls


async def collect_email_attachments(
    container: PublishingContainer, attachments: list[EmailAttachment]
) -> list[str]:
    image_urls: list[str] = []
    for index, attachment in enumerate(attachments):
        try:
            data = base64.b64decode(attachment.content, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning("Skipping undecodable email attachment", index=index, error=str(e))
            continue

        try:
            stored = await container.media_store.upload(
                data,
                attachment.filename,
                attachment.content_type,
                prefix="email",
            )
        except MediaStoreError as e:
            logger.warning("Skipping email attachment", index=index, operation=e.operation, error=str(e))
            continue

        if is_image(attachment.content_type):
            image_urls.append(stored.url)

    return image_urls


async def ingest_fragment(container: PublishingContainer, fragment: InboundFragment) -> None:
    try:
        await container.ingestor.ingest(fragment)
    except SubmissionBusyError as e:
        logger.error(
            "Dropped fragment, every append raced with a claim",
            sender=mask_address(e.sender_address),
            token=e.token,
        )
    except Exception:
        logger.exception(
            "Failed to ingest fragment",
            sender=mask_address(fragment.sender_address),
            channel=fragment.channel.value,
        )


async def handle_whatsapp_message(container: PublishingContainer, params: dict[str, str]) -> None:
    """Background half of the WhatsApp webhook."""
    sender = whatsapp_sender(params)
    body = params.get("Body", "")
    token = extract_token(body)

    if not sender or not token:
        logger.info(
            "Ignoring WhatsApp message without token",
            sender=mask_address(sender),
            message_sid=params.get("MessageSid"),
        )
        return

    try:
        media_urls = await collect_twilio_media(container, params)
    except Exception:
        logger.exception("Media collection failed", sender=mask_address(sender))
        media_urls = []

    fragment = InboundFragment(
        sender_address=sender,
        token=token,
        message_part=body,
        channel=Channel.WHATSAPP,
        media_urls=media_urls,
        force_process=should_force_process(remove_token(body), container.policy.force_keywords),
    )
    await ingest_fragment(container, fragment)


async def handle_inbound_email(container: PublishingContainer, email: InboundEmail) -> None:
    """Background half of the email webhook. Emails are always complete."""
    sender = normalize_email(email.sender)
    token = extract_token(email.subject) or extract_token(email.text)

    if not sender or not token:
        logger.info("Ignoring email without token", sender=mask_address(sender))
        return

    try:
        media_urls = await collect_email_attachments(container, email.attachments)
    except Exception:
        logger.exception("Attachment collection failed", sender=mask_address(sender))
        media_urls = []

    # The subject leads the text so it can serve as the fallback title
    subject = remove_token(email.subject)
    message = "\n\n".join(part for part in (subject, email.text.strip()) if part)

    fragment = InboundFragment(
        sender_address=sender,
        token=token,
        message_part=message,
        channel=Channel.EMAIL,
        media_urls=media_urls,
        force_process=True,
    )
    await ingest_fragment(container, fragment)
