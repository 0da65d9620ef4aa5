from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set

import httpx

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.identifiers import mask_identifier
from authflow.storage.models import DeviceConfirmation, Principal

logger = get_logger(__name__)

_OTP_MESSAGES = {
    "ar": "رمز التحقق الخاص بك هو {code}. لا تشاركه مع أحد.",
    "en": "Your verification code is {code}. Do not share it with anyone.",
}


@dataclass
class DeliveryResult:
    provider: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class OtpDeliveryChannel(Protocol):
    async def send(self, principal: Principal, code: str, purpose: str) -> DeliveryResult: ...


class DeviceConfirmationChannel(Protocol):
    async def notify(self, confirmation: DeviceConfirmation) -> None: ...


def render_otp_message(code: str, locale: str) -> str:
    template = _OTP_MESSAGES.get((locale or "").split("-")[0], _OTP_MESSAGES["en"])
    return template.format(code=code)


class SmsGatewayChannel:
    """Posts codes to an HTTP SMS gateway and normalises the provider reply."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        sender: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise RuntimeError("SMS_GATEWAY_API_KEY is not set")
        self.sender = sender
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Token {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def send(self, principal: Principal, code: str, purpose: str) -> DeliveryResult:
        if not principal.phone:
            return DeliveryResult(provider="sms_gateway", success=False, error="no_phone_on_file")
        payload = {
            "recipient": principal.phone.lstrip("+"),
            "text": render_otp_message(code, principal.locale),
        }
        if self.sender:
            payload["from"] = self.sender
        resp = await self._client.post("/message/sendSms", data=payload)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            return DeliveryResult(
                provider="sms_gateway", success=False, error="invalid_response_format"
            )
        success = data.get("code") == 0
        return DeliveryResult(
            provider="sms_gateway",
            success=success,
            message_id=(data.get("data") or {}).get("messageId") if success else None,
            error=None if success else (data.get("message") or "provider_error"),
            raw=data,
        )

    async def close(self) -> None:
        await self._client.aclose()


class LoggingOtpChannel:
    """Development channel: records deliveries in memory and logs a masked recipient.

    With ``expose_codes`` (test mode only) the digits are written to the log too.
    """

    def __init__(self, *, expose_codes: bool = False) -> None:
        self.expose_codes = expose_codes
        self.sent: List[Dict[str, str]] = []

    async def send(self, principal: Principal, code: str, purpose: str) -> DeliveryResult:
        self.sent.append({"principal_id": principal.id, "code": code, "purpose": purpose})
        extra = {"digits": code} if self.expose_codes else {}
        logger.info(
            "otp_delivery_logged",
            principal_id=principal.id,
            recipient=mask_identifier(principal.phone or principal.email),
            purpose=purpose,
            **extra,
        )
        return DeliveryResult(provider="log", success=True)

    def last_code(self, principal_id: str, purpose: Optional[str] = None) -> Optional[str]:
        for entry in reversed(self.sent):
            if entry["principal_id"] == principal_id and (
                purpose is None or entry["purpose"] == purpose
            ):
                return entry["code"]
        return None


class WebhookConfirmationChannel:
    """Pushes ``(callback_id, device_id)`` to the companion-app backend."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"X-Channel-Token": token} if token else {}
        self.url = url
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def notify(self, confirmation: DeviceConfirmation) -> None:
        resp = await self._client.post(
            self.url,
            json={
                "callback_id": confirmation.callback_id,
                "device_id": confirmation.device_id,
                "principal_id": confirmation.principal_id,
                "deadline_at": confirmation.deadline_at.isoformat(),
            },
        )
        resp.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class LoggingConfirmationChannel:
    def __init__(self) -> None:
        self.notified: List[str] = []

    async def notify(self, confirmation: DeviceConfirmation) -> None:
        self.notified.append(confirmation.callback_id)
        logger.info(
            "device_confirmation_notify_logged",
            callback_id=confirmation.callback_id,
            device_id=confirmation.device_id,
        )


class Dispatcher:
    """Runs outbound deliveries as background tasks; failures are logged, never raised.

    The state machine does not wait on delivery. ``drain`` lets shutdown and
    tests wait for in-flight sends.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, coro, *, event: str, **context: Any) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error(
                    f"{event}_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                    **context,
                )
                return
            result = finished.result()
            if isinstance(result, DeliveryResult) and not result.success:
                logger.warning(
                    f"{event}_rejected", provider=result.provider, error=result.error, **context
                )

        task.add_done_callback(_done)
        return task

    async def drain(self, timeout: float = 5.0) -> None:
        pending = list(self._tasks)
        if not pending:
            return
        await asyncio.wait(pending, timeout=timeout)


def build_otp_channel(settings: Settings) -> OtpDeliveryChannel:
    if settings.sms_gateway_url and settings.sms_gateway_api_key:
        return SmsGatewayChannel(
            settings.sms_gateway_url,
            settings.sms_gateway_api_key,
            sender=settings.sms_sender,
            timeout=settings.sms_timeout_seconds,
        )
    return LoggingOtpChannel(expose_codes=settings.test_mode and settings.expose_otp_codes)


def build_confirmation_channel(settings: Settings) -> DeviceConfirmationChannel:
    if settings.confirmation_webhook_url:
        return WebhookConfirmationChannel(
            settings.confirmation_webhook_url, token=settings.confirmation_channel_token
        )
    return LoggingConfirmationChannel()
