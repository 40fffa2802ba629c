"""
Outbound email notifiers using strategy pattern.

Provides a SendGrid implementation (dynamic templates over the v3 REST API)
and a logging implementation for development and tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from parkingmate.core.config import get_settings
from parkingmate.core.logging import get_logger

logger = get_logger(__name__)


class NotificationError(Exception):
    """Raised when the email provider rejects or cannot receive a message."""

    pass


class Notifier(ABC):
    """
    Abstract base class for email notifiers.

    Sends return False on failure instead of raising; callers treat a failed
    send as non-fatal.
    """

    @abstractmethod
    async def send_registration_invite(
        self,
        email: str,
        name: str,
        token: str,
        expires_hours: int,
    ) -> bool:
        """
        Send the "vehicle detected, please register" email.

        Args:
            email: Recipient address.
            name: Recipient display name.
            token: Registration token embedded in the link.
            expires_hours: Token lifetime shown to the customer.

        Returns:
            bool: True if the provider accepted the message.
        """
        pass

    @abstractmethod
    async def send_otp(
        self,
        email: str,
        name: str,
        code: str,
        expires_minutes: int,
    ) -> bool:
        """
        Send a one-time code.

        Args:
            email: Recipient address.
            name: Recipient display name.
            code: The OTP.
            expires_minutes: Code lifetime shown to the customer.

        Returns:
            bool: True if the provider accepted the message.
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None


class SendGridNotifier(Notifier):
    """
    Notifier backed by SendGrid dynamic templates.

    SendGrid answers 202 Accepted for a queued message; anything else is a
    failure.
    """

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str,
        invite_template_id: str,
        otp_template_id: str,
        app_base_url: str,
        api_url: str = "https://api.sendgrid.com/v3/mail/send",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize SendGrid notifier.

        Args:
            api_key: SendGrid API key.
            from_email: Sender address.
            from_name: Sender display name.
            invite_template_id: Template for registration invites.
            otp_template_id: Template for OTP emails.
            app_base_url: Base URL of the customer web app.
            api_url: Mail send endpoint.
            timeout: HTTP timeout in seconds.
            client: Optional preconfigured client (tests inject a mock transport).
        """
        self._api_url = api_url
        self._from = {"email": from_email, "name": from_name}
        self._invite_template_id = invite_template_id
        self._otp_template_id = otp_template_id
        self._app_base_url = app_base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def registration_url(self, token: str) -> str:
        return f"{self._app_base_url}/customer-registration?token={quote(token, safe='')}"

    async def send_registration_invite(
        self,
        email: str,
        name: str,
        token: str,
        expires_hours: int,
    ) -> bool:
        payload = self._message(
            email,
            name,
            self._invite_template_id,
            {
                "registration_url": self.registration_url(token),
                "expires_hours": str(expires_hours),
            },
        )
        return await self._send(payload, kind="registration_invite", email=email)

    async def send_otp(
        self,
        email: str,
        name: str,
        code: str,
        expires_minutes: int,
    ) -> bool:
        payload = self._message(
            email,
            name,
            self._otp_template_id,
            {"otp_code": code, "expires_minutes": str(expires_minutes)},
        )
        return await self._send(payload, kind="otp_code", email=email)

    def _message(
        self,
        email: str,
        name: str,
        template_id: str,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        return {
            "personalizations": [
                {
                    "to": [{"email": email, "name": name}],
                    "dynamic_template_data": data,
                }
            ],
            "from": self._from,
            "template_id": template_id,
        }

    async def _send(self, payload: dict[str, Any], kind: str, email: str) -> bool:
        try:
            response = await self._client.post(
                self._api_url,
                headers=self._headers,
                json=payload,
            )
            if response.status_code != 202:
                raise NotificationError(
                    f"SendGrid returned {response.status_code}: {response.text[:200]}"
                )
        except (httpx.HTTPError, NotificationError) as e:
            logger.error("notification_send_failed", kind=kind, email=email, error=str(e))
            return False

        logger.info("notification_sent", kind=kind, email=email)
        return True

    async def close(self) -> None:
        await self._client.aclose()


@dataclass
class SentNotification:
    """A message recorded by LoggingNotifier."""

    kind: str
    email: str
    name: str
    data: dict[str, Any]


@dataclass
class LoggingNotifier(Notifier):
    """
    Notifier that logs and records messages instead of sending them.

    Attributes:
        fail: When True every send reports failure.
        sent: Messages accepted so far.
    """

    fail: bool = False
    sent: list[SentNotification] = field(default_factory=list)

    async def send_registration_invite(
        self,
        email: str,
        name: str,
        token: str,
        expires_hours: int,
    ) -> bool:
        return self._record(
            "registration_invite",
            email,
            name,
            {"token": token, "expires_hours": expires_hours},
        )

    async def send_otp(
        self,
        email: str,
        name: str,
        code: str,
        expires_minutes: int,
    ) -> bool:
        return self._record(
            "otp_code",
            email,
            name,
            {"code": code, "expires_minutes": expires_minutes},
        )

    def _record(self, kind: str, email: str, name: str, data: dict[str, Any]) -> bool:
        if self.fail:
            logger.warning("notification_send_failed", kind=kind, email=email, error="disabled")
            return False
        self.sent.append(SentNotification(kind=kind, email=email, name=name, data=data))
        logger.info("notification_logged", kind=kind, email=email)
        return True


_notifier: Notifier | None = None


def get_notifier() -> Notifier:
    """
    Get or create the global notifier.

    SendGrid is used when an API key is configured, otherwise messages are
    only logged.

    Returns:
        Notifier: Configured notifier.
    """
    global _notifier
    if _notifier is None:
        settings = get_settings()
        if settings.sendgrid_api_key:
            _notifier = SendGridNotifier(
                api_key=settings.sendgrid_api_key,
                from_email=settings.sendgrid_from_email,
                from_name=settings.sendgrid_from_name,
                invite_template_id=settings.sendgrid_vehicle_detection_template_id,
                otp_template_id=settings.sendgrid_otp_template_id,
                app_base_url=settings.app_base_url,
                api_url=settings.sendgrid_api_url,
                timeout=settings.notifier_timeout_seconds,
            )
        else:
            logger.warning("sendgrid_not_configured", fallback="logging")
            _notifier = LoggingNotifier()
    return _notifier


async def close_notifier() -> None:
    """Close the global notifier, if any."""
    global _notifier
    if _notifier is not None:
        await _notifier.close()
        _notifier = None
