# app/services/notification_service.py
"""
Customer notifications over the WhatsApp Business API.

Each NotificationIntent is rendered into a plain-text message and POSTed to
WHATSAPP_API_URL with a bearer token. With no URL or token configured the
message is only logged, so a dev box runs without a WhatsApp account.
"""

from typing import Callable, Dict, Optional

import httpx

from app.config import settings
from app.domain.intents import NotificationIntent, NotificationKind
from app.repositories.base import NotificationSink
from app.utils.logger import get_logger
from app.utils.validators import mask_phone

logger = get_logger(__name__)


def _entry_confirmation(p: dict) -> str:
    return (
        f"Welcome! Your vehicle {p['vehicle_number']} is being parked.\n"
        f"Token: {p['token']}\n"
        f"Location: Zone {p['zone']}, Slot {p['slot']}\n"
        f"Keep this token to call your car."
    )


def _markout_options(p: dict) -> str:
    options = ", ".join(f"{m} min" for m in p.get("options", []))
    return (
        f"Your vehicle {p['vehicle_number']} is parked safely.\n"
        f"When should we bring it to the exit? Reply with one of: {options}\n"
        f"Token: {p['token']}"
    )


def _retrieval_started(p: dict) -> str:
    valet = p.get("valet_name") or "Our valet"
    return f"{valet} is bringing your vehicle {p['vehicle_number']} to the exit now."


def _delivery_confirmation(p: dict) -> str:
    minutes = p.get("total_minutes")
    stay = f" Total stay: {minutes} min." if minutes is not None else ""
    return f"Your vehicle {p['vehicle_number']} has been delivered. Thank you!{stay}"


TEMPLATES: Dict[NotificationKind, Callable[[dict], str]] = {
    NotificationKind.ENTRY_CONFIRMATION: _entry_confirmation,
    NotificationKind.MARKOUT_OPTIONS: _markout_options,
    NotificationKind.RETRIEVAL_STARTED: _retrieval_started,
    NotificationKind.DELIVERY_CONFIRMATION: _delivery_confirmation,
}


def render_message(intent: NotificationIntent) -> str:
    return TEMPLATES[intent.kind](intent.payload)


def to_whatsapp_number(phone: str, country_code: Optional[str] = None) -> str:
    """10-digit local number → E.164 digits without '+' ("91XXXXXXXXXX")."""
    return f"{country_code or settings.PHONE_COUNTRY_CODE}{phone}"


class WhatsAppNotifier(NotificationSink):
    def __init__(self, api_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None, client: Optional[httpx.Client] = None):
        self.api_url = api_url if api_url is not None else settings.WHATSAPP_API_URL
        self.token = token if token is not None else settings.WHATSAPP_TOKEN
        self.timeout = timeout or settings.WHATSAPP_TIMEOUT_SECONDS
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.api_url and self.token)

    def send(self, intent: NotificationIntent) -> None:
        """Deliver one message. Raises httpx.HTTPError on transport or HTTP failure."""
        text = render_message(intent)
        if not self.enabled:
            logger.info(
                f"[WHATSAPP] (disabled) {intent.kind.value} → {mask_phone(intent.recipient_phone)}: "
                f"{text.splitlines()[0]}"
            )
            return

        body = {
            "messaging_product": "whatsapp",
            "to": to_whatsapp_number(intent.recipient_phone),
            "type": "text",
            "text": {"body": text},
        }
        headers = {"Authorization": f"Bearer {self.token}"}

        if self._client is not None:
            response = self._client.post(self.api_url, json=body, headers=headers, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.api_url, json=body, headers=headers)
        response.raise_for_status()
        logger.info(f"[WHATSAPP] {intent.kind.value} sent to {mask_phone(intent.recipient_phone)}")
