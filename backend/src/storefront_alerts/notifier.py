from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Literal, Protocol

from .models import ContactChannel

NotificationStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class NotificationRequest:
    channel: ContactChannel
    destination: str
    template_id: str
    template_data: dict[str, str] = field(default_factory=dict)
    idempotency_key: str = ""


@dataclass(frozen=True)
class NotificationResult:
    status: NotificationStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class NotifierSender(Protocol):
    def send(self, request: NotificationRequest) -> NotificationResult: ...


class StubNotifierSender:
    def __init__(self, *, enabled: bool, channel: str = "email,sms") -> None:
        self._enabled = enabled
        parsed = {item.strip().lower() for item in channel.split(",") if item.strip()}
        self._channels = parsed or {"email", "sms"}
        self._lock = Lock()
        self.deliveries: list[NotificationRequest] = []

    def send(self, request: NotificationRequest) -> NotificationResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return NotificationResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Live notification delivery is disabled",
            )

        if request.channel not in self._channels:
            return NotificationResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_mismatch",
                error_message=f"Configured channels are {', '.join(sorted(self._channels))}",
            )

        if "fail" in request.destination.lower():
            return NotificationResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for destination",
            )

        with self._lock:
            self.deliveries.append(request)
            message_id = f"stub-{request.template_id}-{len(self.deliveries):06d}"
        return NotificationResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _NotifierSendError(Exception):
    """Internal error raised when a notifier HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpNotifierSender:
    """Notifier that hands rendered templates to the messaging service over HTTP."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        channels: set[str],
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._channels: frozenset[str] = frozenset(channels)
        self._timeout_seconds = timeout_seconds

    def send(self, request: NotificationRequest) -> NotificationResult:
        attempted_at = datetime.now(timezone.utc)

        if request.channel not in self._channels:
            return NotificationResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_not_configured",
                error_message=(
                    f"Channel '{request.channel}' is not configured; "
                    f"available channels: {', '.join(sorted(self._channels))}"
                ),
            )

        body = {
            "channel": request.channel,
            "recipient": request.destination,
            "template_id": request.template_id,
            "template_data": dict(request.template_data),
            "idempotency_key": request.idempotency_key,
        }

        try:
            response_data = self._post(body)
        except _NotifierSendError as exc:
            masked = mask_destination(request.destination, request.channel)
            return NotificationResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked})",
            )
        message_id = response_data.get("message_id")
        return NotificationResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id if isinstance(message_id, str) else None,
        )

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _NotifierSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise _NotifierSendError(
                    error_code="timeout",
                    message=f"Request timed out: {exc.reason}",
                ) from exc
            raise _NotifierSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _NotifierSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except ValueError as exc:
            raise _NotifierSendError(
                error_code="invalid_response",
                message=f"Notifier returned a non-JSON response: {exc}",
            ) from exc


def mask_destination(destination: str, channel: str) -> str:
    normalized = destination.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "sms":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
