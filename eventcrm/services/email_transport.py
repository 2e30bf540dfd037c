"""Mail transports + provider fallback chain.

Every provider implements ``MailTransport``. Callers never talk to a provider
directly; they get a ``TransportChain`` (built from settings, or injected by
tests) that tries providers in configured order.
"""

from __future__ import annotations

import base64
import html as html_module
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Protocol, Sequence

import httpx

from eventcrm.core.config import Settings, settings as default_settings
from eventcrm.core.exceptions import DeliveryUnknownError, TransientDependencyError
from eventcrm.core.structured_logging import mask_email
from eventcrm.db.enums import EmailProvider
from eventcrm.services.http_service import DEFAULT_RETRY_STATUSES, request_with_retries

logger = logging.getLogger(__name__)

PROVIDER_MAX_ATTEMPTS = 3
PROVIDER_RETRY_BASE_DELAY = 0.5
PROVIDER_RETRY_MAX_DELAY = 4.0
PROVIDER_TIMEOUT_SECONDS = 20.0

RESEND_BATCH_LIMIT = 100

# Failures raised before any bytes reached the provider
NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


def html_to_text(content: str) -> str:
    """Convert HTML into readable text for the plain-text alternative."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<br\s*/?>|</p>", "\n", text, flags=re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\s*\n\s*", "\n", text).strip()
    return html_module.unescape(text)


def format_from_address(email: str, name: str | None = None) -> str:
    return f"{name} <{email}>" if name else email


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    subject: str
    html: str
    text: str | None = None
    from_email: str | None = None
    from_name: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    idempotency_key: str | None = None
    attachments: tuple[dict[str, str], ...] = ()


@dataclass(frozen=True)
class DeliveryReceipt:
    provider: str
    message_id: str | None


class MailTransport(Protocol):
    key: str
    # Max messages per batch request; 0 means the provider has no batch API
    batch_limit: int

    def is_configured(self) -> bool:
        """Whether credentials are present."""

    async def send(self, message: OutboundEmail) -> DeliveryReceipt:
        """Send one message or raise TransientDependencyError."""

    async def send_batch(
        self, messages: Sequence[OutboundEmail], *, idempotency_key: str | None = None
    ) -> list[DeliveryReceipt]:
        """Send up to ``batch_limit`` messages in one request.

        Raises DeliveryUnknownError when the request may have been accepted.
        """


def _error_detail(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        detail = data.get("message") or data.get("error")
        return str(detail) if detail else None
    return None


def _provider_error(provider: str, response: httpx.Response) -> TransientDependencyError:
    error_msg = f"{provider} API error: {response.status_code}"
    detail = _error_detail(response)
    if detail:
        error_msg = f"{error_msg} ({detail})"
    return TransientDependencyError(error_msg)


# =============================================================================
# Resend
# =============================================================================


class ResendTransport:
    key = EmailProvider.RESEND.value
    batch_limit = RESEND_BATCH_LIMIT

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = "https://api.resend.com",
        default_from: str = "",
        default_from_name: str | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.default_from = default_from
        self.default_from_name = default_from_name
        self._http_transport = http_transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _payload(self, message: OutboundEmail) -> dict[str, object]:
        payload: dict[str, object] = {
            "from": format_from_address(
                message.from_email or self.default_from,
                message.from_name or self.default_from_name,
            ),
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        text = message.text or html_to_text(message.html)
        if text:
            payload["text"] = text
        if message.tags:
            payload["tags"] = [
                {"name": name, "value": value} for name, value in message.tags.items()
            ]
        if message.attachments:
            payload["attachments"] = [dict(a) for a in message.attachments]
        return payload

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post(
        self, path: str, body: object, headers: dict[str, str]
    ) -> tuple[httpx.Response, bool]:
        """POST with retries.

        Returns the final response and whether an earlier attempt may have
        reached the provider without us seeing the reply.
        """
        maybe_delivered = False
        try:
            async with httpx.AsyncClient(
                timeout=PROVIDER_TIMEOUT_SECONDS, transport=self._http_transport
            ) as client:

                async def request_fn() -> httpx.Response:
                    nonlocal maybe_delivered
                    try:
                        return await client.post(
                            f"{self.api_url}{path}", headers=headers, json=body
                        )
                    except NOT_SENT_ERRORS:
                        raise
                    except httpx.RequestError:
                        maybe_delivered = True
                        raise

                response = await request_with_retries(
                    request_fn,
                    max_attempts=PROVIDER_MAX_ATTEMPTS,
                    base_delay=PROVIDER_RETRY_BASE_DELAY,
                    max_delay=PROVIDER_RETRY_MAX_DELAY,
                    retry_statuses=DEFAULT_RETRY_STATUSES,
                    label="resend",
                )
                return response, maybe_delivered
        except httpx.TimeoutException as exc:
            if maybe_delivered:
                raise DeliveryUnknownError("Resend timeout after request was sent") from exc
            raise TransientDependencyError("Resend connection timeout") from exc
        except httpx.RequestError as exc:
            if maybe_delivered:
                raise DeliveryUnknownError(
                    f"Resend connection lost after request was sent: {exc.__class__.__name__}"
                ) from exc
            raise TransientDependencyError(
                f"Resend connection error: {exc.__class__.__name__}"
            ) from exc

    async def send(self, message: OutboundEmail) -> DeliveryReceipt:
        response, _ = await self._post(
            "/emails", self._payload(message), self._headers(message.idempotency_key)
        )
        # 409 on an idempotency key means the message was already accepted
        if 200 <= response.status_code < 300 or response.status_code == 409:
            message_id = None
            try:
                data = response.json()
                if isinstance(data, dict) and isinstance(data.get("id"), str):
                    message_id = data["id"]
            except ValueError:
                pass
            return DeliveryReceipt(provider=self.key, message_id=message_id)
        raise _provider_error("Resend", response)

    async def send_batch(
        self, messages: Sequence[OutboundEmail], *, idempotency_key: str | None = None
    ) -> list[DeliveryReceipt]:
        if len(messages) > self.batch_limit:
            raise ValueError(f"Resend batch limit is {self.batch_limit}")
        response, maybe_delivered = await self._post(
            "/emails/batch",
            [self._payload(m) for m in messages],
            self._headers(idempotency_key),
        )
        # 409 on a batch key: an identical request is still in flight
        if response.status_code == 409 and idempotency_key:
            raise DeliveryUnknownError("Resend batch with this idempotency key is in progress")
        if not 200 <= response.status_code < 300:
            if maybe_delivered:
                raise DeliveryUnknownError(
                    f"Resend API error {response.status_code} after an unacknowledged attempt"
                )
            raise _provider_error("Resend", response)
        items = []
        try:
            body = response.json()
            if isinstance(body, dict):
                items = body.get("data") or []
        except ValueError:
            pass
        receipts = []
        for index in range(len(messages)):
            item = items[index] if index < len(items) else {}
            message_id = item.get("id") if isinstance(item, dict) else None
            receipts.append(DeliveryReceipt(provider=self.key, message_id=message_id))
        return receipts


# =============================================================================
# Mailgun
# =============================================================================


class MailgunTransport:
    key = EmailProvider.MAILGUN.value
    batch_limit = 0

    def __init__(
        self,
        api_key: str,
        domain: str,
        *,
        api_url: str = "https://api.mailgun.net/v3",
        default_from: str = "",
        default_from_name: str | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.domain = domain
        self.api_url = api_url.rstrip("/")
        self.default_from = default_from
        self.default_from_name = default_from_name
        self._http_transport = http_transport

    def is_configured(self) -> bool:
        return bool(self.api_key and self.domain)

    async def send(self, message: OutboundEmail) -> DeliveryReceipt:
        data: dict[str, object] = {
            "from": format_from_address(
                message.from_email or self.default_from,
                message.from_name or self.default_from_name,
            ),
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
        }
        text = message.text or html_to_text(message.html)
        if text:
            data["text"] = text
        for name, value in message.tags.items():
            data[f"v:{name}"] = value
        if message.tags:
            data["o:tag"] = list(message.tags.values())
        files = [
            ("attachment", (a["filename"], base64.b64decode(a["content"])))
            for a in message.attachments
        ]

        try:
            async with httpx.AsyncClient(
                timeout=PROVIDER_TIMEOUT_SECONDS, transport=self._http_transport
            ) as client:

                async def request_fn() -> httpx.Response:
                    return await client.post(
                        f"{self.api_url}/{self.domain}/messages",
                        auth=("api", self.api_key),
                        data=data,
                        files=files or None,
                    )

                response = await request_with_retries(
                    request_fn,
                    max_attempts=PROVIDER_MAX_ATTEMPTS,
                    base_delay=PROVIDER_RETRY_BASE_DELAY,
                    max_delay=PROVIDER_RETRY_MAX_DELAY,
                    label="mailgun",
                )
        except httpx.TimeoutException as exc:
            raise TransientDependencyError("Mailgun connection timeout") from exc
        except httpx.RequestError as exc:
            raise TransientDependencyError(
                f"Mailgun connection error: {exc.__class__.__name__}"
            ) from exc

        if not 200 <= response.status_code < 300:
            raise _provider_error("Mailgun", response)
        message_id = None
        try:
            body = response.json()
            if isinstance(body, dict):
                message_id = body.get("id")
        except ValueError:
            pass
        return DeliveryReceipt(provider=self.key, message_id=message_id)

    async def send_batch(
        self, messages: Sequence[OutboundEmail], *, idempotency_key: str | None = None
    ) -> list[DeliveryReceipt]:
        raise TransientDependencyError("Mailgun transport has no batch API")


# =============================================================================
# Dry run (no provider configured)
# =============================================================================


class DryRunTransport:
    """Logs instead of sending. Used in dev when no provider key is set."""

    key = EmailProvider.DRY_RUN.value
    batch_limit = 0

    def is_configured(self) -> bool:
        return True

    async def send(self, message: OutboundEmail) -> DeliveryReceipt:
        logger.info(
            "[dry-run] email to=%s subject=%r", mask_email(message.to), message.subject
        )
        return DeliveryReceipt(provider=self.key, message_id=f"dry-run-{uuid.uuid4()}")

    async def send_batch(
        self, messages: Sequence[OutboundEmail], *, idempotency_key: str | None = None
    ) -> list[DeliveryReceipt]:
        return [await self.send(m) for m in messages]


# =============================================================================
# Fallback chain
# =============================================================================


class TransportChain:
    """Ordered list of transports; each send falls through on failure."""

    def __init__(self, transports: Sequence[MailTransport]):
        if not transports:
            raise ValueError("TransportChain needs at least one transport")
        self.transports = list(transports)

    @property
    def batch_transport(self) -> MailTransport | None:
        """Primary transport, if it supports batch requests."""
        primary = self.transports[0]
        return primary if primary.batch_limit > 0 else None

    async def send(self, message: OutboundEmail) -> DeliveryReceipt:
        last_error: Exception | None = None
        for transport in self.transports:
            try:
                return await transport.send(message)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Provider %s failed for %s: %s",
                    transport.key,
                    mask_email(message.to),
                    exc,
                )
        raise TransientDependencyError(
            f"All providers failed: {last_error}"
        ) from last_error

    async def send_batch(
        self, messages: Sequence[OutboundEmail], *, idempotency_key: str | None = None
    ) -> list[DeliveryReceipt]:
        transport = self.batch_transport
        if transport is None:
            raise ValueError("Primary transport does not support batch sends")
        return await transport.send_batch(messages, idempotency_key=idempotency_key)


def build_transport_chain(config: Settings | None = None) -> TransportChain:
    """Build the provider chain from EMAIL_PROVIDER_ORDER and configured keys."""
    config = config or default_settings
    available: dict[str, MailTransport] = {
        EmailProvider.RESEND.value: ResendTransport(
            config.RESEND_API_KEY,
            api_url=config.RESEND_API_URL,
            default_from=config.EMAIL_FROM,
            default_from_name=config.EMAIL_FROM_NAME,
        ),
        EmailProvider.MAILGUN.value: MailgunTransport(
            config.MAILGUN_API_KEY,
            config.MAILGUN_DOMAIN,
            api_url=config.MAILGUN_API_URL,
            default_from=config.EMAIL_FROM,
            default_from_name=config.EMAIL_FROM_NAME,
        ),
    }
    transports = []
    for name in config.email_provider_order_list:
        transport = available.get(name)
        if transport is None:
            logger.warning("Unknown email provider in EMAIL_PROVIDER_ORDER: %s", name)
            continue
        if transport.is_configured():
            transports.append(transport)

    if not transports:
        logger.warning("No email provider configured - emails will be logged, not sent")
        transports.append(DryRunTransport())
    return TransportChain(transports)
