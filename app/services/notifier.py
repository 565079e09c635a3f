# app/services/notifier.py
"""
Outbound notifier.

Replies follow the sender's address: phone numbers get a WhatsApp message via
the Twilio Messages REST API, email addresses get a SendGrid v3 mail. Sends are
best-effort and report a SendResult instead of raising on provider failures.
"""

import asyncio
from dataclasses import dataclass

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger, mask_address

logger = get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"

REQUEST_TIMEOUT = 10  # seconds
MAX_ATTEMPTS = 3
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Twilio error codes
TEMPLATE_REQUIRED_CODES = {63016, 63032}
BLOCKED_CODES = {21408, 21610}
RATE_LIMIT_CODES = {429, 63017}

DEFAULT_EMAIL_SUBJECT = "نتيجة معالجة الخبر"


class NotifierError(Exception):
    """Raised when a notifier is used without the configuration it needs."""

    def __init__(self, message: str, provider: str = "unknown", recoverable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.recoverable = recoverable


@dataclass(slots=True)
class SendResult:
    success: bool
    provider: str
    message_id: str | None = None
    error: str | None = None
    error_code: int | None = None
    requires_template: bool = False
    attempts: int = 0


def strip_whatsapp_prefix(number: str) -> str:
    value = (number or "").strip()
    if value.lower().startswith("whatsapp:"):
        return value[len("whatsapp:") :]
    return value


class WhatsAppNotifier:
    """Twilio WhatsApp sender with retry and backoff."""

    provider = "twilio"

    def __init__(
        self,
        *,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = strip_whatsapp_prefix(from_number or settings.TWILIO_WHATSAPP_NUMBER or "")
        self.retry_delay = retry_delay
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @property
    def messages_url(self) -> str:
        return f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"

    async def send(self, to: str, body: str, media_url: str | None = None) -> SendResult:
        if not self.configured:
            raise NotifierError("Twilio credentials are not configured", provider=self.provider)

        to_number = strip_whatsapp_prefix(to)
        payload = {
            "From": f"whatsapp:{self.from_number}",
            "To": f"whatsapp:{to_number}",
            "Body": body,
        }
        if media_url:
            payload["MediaUrl"] = media_url

        last_error: str | None = None
        last_code: int | None = None

        async with httpx.AsyncClient(
            timeout=REQUEST_TIMEOUT,
            auth=(self.account_sid, self.auth_token),
            transport=self._transport,
        ) as client:
            for attempt in range(1, MAX_ATTEMPTS + 1):
                try:
                    response = await client.post(self.messages_url, data=payload)
                except httpx.RequestError as exc:
                    last_error = str(exc)
                    last_code = None
                    logger.warning(
                        "Twilio request error",
                        to=mask_address(to_number),
                        attempt=attempt,
                        error=last_error,
                        error_type=type(exc).__name__,
                    )
                else:
                    if response.status_code < 400:
                        message_sid = response.json().get("sid")
                        logger.info(
                            "WhatsApp message sent",
                            to=mask_address(to_number),
                            message_sid=message_sid,
                            attempt=attempt,
                        )
                        return SendResult(
                            success=True,
                            provider=self.provider,
                            message_id=message_sid,
                            attempts=attempt,
                        )

                    error_body = _safe_json(response)
                    last_code = error_body.get("code") or response.status_code
                    last_error = error_body.get("message") or response.text[:200]

                    logger.warning(
                        "Twilio send failed",
                        to=mask_address(to_number),
                        attempt=attempt,
                        status_code=response.status_code,
                        error_code=last_code,
                        error=last_error,
                    )

                    if last_code in TEMPLATE_REQUIRED_CODES:
                        return SendResult(
                            success=False,
                            provider=self.provider,
                            error=last_error,
                            error_code=last_code,
                            requires_template=True,
                            attempts=attempt,
                        )

                    if last_code in BLOCKED_CODES:
                        return SendResult(
                            success=False,
                            provider=self.provider,
                            error=last_error,
                            error_code=last_code,
                            attempts=attempt,
                        )

                    if last_code in RATE_LIMIT_CODES or response.status_code == 429:
                        await asyncio.sleep(self.retry_delay * 3)
                    elif response.status_code not in RETRY_STATUS_CODES:
                        return SendResult(
                            success=False,
                            provider=self.provider,
                            error=last_error,
                            error_code=last_code,
                            attempts=attempt,
                        )

                if attempt < MAX_ATTEMPTS:
                    await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))

        logger.error(
            "WhatsApp message failed after all retries",
            to=mask_address(to_number),
            attempts=MAX_ATTEMPTS,
            error_code=last_code,
            error=last_error,
        )
        return SendResult(
            success=False,
            provider=self.provider,
            error=last_error,
            error_code=last_code,
            attempts=MAX_ATTEMPTS,
        )


class EmailNotifier:
    """SendGrid v3 mail sender."""

    provider = "sendgrid"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        from_address: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key or settings.SENDGRID_API_KEY
        self.from_address = from_address or settings.EMAIL_FROM_ADDRESS
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.from_address)

    async def send(self, to: str, body: str, subject: str = DEFAULT_EMAIL_SUBJECT) -> SendResult:
        if not self.configured:
            raise NotifierError("SENDGRID_API_KEY is not configured", provider=self.provider)

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_address},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
                response = await client.post(SENDGRID_SEND_URL, json=payload, headers=headers)
        except httpx.RequestError as exc:
            logger.warning("SendGrid request error", to=mask_address(to), error=str(exc))
            return SendResult(success=False, provider=self.provider, error=str(exc), attempts=1)

        if response.status_code >= 400:
            logger.warning(
                "SendGrid send failed",
                to=mask_address(to),
                status_code=response.status_code,
                error=response.text[:200],
            )
            return SendResult(
                success=False,
                provider=self.provider,
                error=response.text[:200],
                error_code=response.status_code,
                attempts=1,
            )

        message_id = response.headers.get("X-Message-Id")
        logger.info("Email reply sent", to=mask_address(to), message_id=message_id)
        return SendResult(success=True, provider=self.provider, message_id=message_id, attempts=1)


class OutboundNotifier:
    """Routes a reply to the channel that matches the recipient address."""

    def __init__(self, whatsapp: WhatsAppNotifier, email: EmailNotifier):
        self.whatsapp = whatsapp
        self.email = email

    async def send_reply(self, address: str, body: str) -> SendResult:
        if "@" in (address or ""):
            return await self.email.send(address, body)
        return await self.whatsapp.send(address, body)

    def status(self) -> dict[str, bool]:
        return {"whatsapp": self.whatsapp.configured, "email": self.email.configured}


def _safe_json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
