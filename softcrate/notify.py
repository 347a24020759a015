from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
import logging
import os

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

logger = logging.getLogger(__name__)

RESEND_EMAILS_ENDPOINT = "https://api.resend.com/emails"

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates", "email")

# kind -> subject; every kind has a <kind>.html template
SUBJECTS: Dict[str, str] = {
    "delivery": "Your Softcrate order - license key",
    "restock_delivery": "Your license key has arrived - Softcrate",
    "backorder": "We received your order (waiting list)",
    "cancellation": "Order cancelled - Softcrate",
    "refund": "Refund confirmed - Softcrate",
    "admin_voucher": "[{voucher_label}] {amount} {currency} - {order_number}",
}

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)


def render(kind: str, data: Dict[str, Any]) -> Tuple[str, str]:
    """Return (subject, html) for a template kind."""
    if kind not in SUBJECTS:
        raise ValueError(f"unknown email template: {kind}")
    subject = SUBJECTS[kind].format_map(_Missing(data))
    html = _env.get_template(f"{kind}.html").render(**data)
    return subject, html


class _Missing(dict):
    def __missing__(self, key: str) -> str:
        return ""


# ----------------------------
# Notifier interface
# ----------------------------
class Notifier(ABC):
    # True if the provider accepted the message
    @abstractmethod
    async def send(self, to: str, kind: str, data: Dict[str, Any]) -> bool:
        ...


class LogNotifier(Notifier):
    """Used when no email provider is configured."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []

    async def send(self, to: str, kind: str, data: Dict[str, Any]) -> bool:
        subject, _ = render(kind, data)
        logger.info("Email not sent (no provider): to=%s subject=%r",
                    to, subject)
        self.sent.append((to, kind))
        return False


class ResendNotifier(Notifier):
    def __init__(self, http: httpx.AsyncClient, *, api_key: str,
                 sender: str, reply_to: Optional[str] = None) -> None:
        self.http = http
        self.api_key = api_key
        self.sender = sender
        self.reply_to = reply_to

    async def send(self, to: str, kind: str, data: Dict[str, Any]) -> bool:
        if not to:
            logger.debug("Skipping %s email with no recipient.", kind)
            return False
        subject, html = render(kind, data)
        payload: Dict[str, Any] = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
            "tags": [{"name": "kind", "value": kind}],
        }
        if self.reply_to:
            payload["reply_to"] = [self.reply_to]
        headers = {"Authorization": f"Bearer {self.api_key}"}
        idem = data.get("idempotency_key")
        if idem:
            headers["Idempotency-Key"] = str(idem)

        try:
            resp = await self.http.post(
                RESEND_EMAILS_ENDPOINT, json=payload, headers=headers
            )
        except httpx.HTTPError as e:
            logger.warning("Resend request failed for %s email to %s: %s",
                           kind, to, e)
            return False
        if resp.is_success:
            logger.info("Email sent: kind=%s to=%s", kind, to)
            return True
        logger.warning("Resend API error (%s) for %s email to %s: %s",
                       resp.status_code, kind, to, resp.text[:500])
        return False
