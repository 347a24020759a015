from abc import ABC, abstractmethod
from typing import Optional, Tuple
from fastapi import HTTPException
import os
import hmac
import hashlib
import base64
import json

PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")
SIGNATURE_HEADER = "x-payment-signature"


def sign_payload(payload: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (capture_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


# ----------------------------
# Signed capture events
# ----------------------------
class SignedCapture(PaymentAdapter):
    """
    Capture notifications relayed by the checkout front end after the
    provider confirmed the payment, signed with a shared secret.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = PAYMENT_WEBHOOK_SECRET if secret is None else secret

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        if not self.secret:
            raise HTTPException(
                status_code=500,
                detail="PAYMENT_WEBHOOK_SECRET is not configured"
            )
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign_payload(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Invalid event")
        return event

    def event_kind(self, event: dict) -> str:
        return str(event.get("type", "")).split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                str(event.get("capture_id") or ""),
                event.get("idempotency_key")
        )
