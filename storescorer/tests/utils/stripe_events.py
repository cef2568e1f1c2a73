from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any


def sign_payload(payload: bytes, secret: str, *, timestamp: int | None = None) -> str:
    # Build a Stripe-Signature header the same way Stripe does (t=..., v1=HMAC-SHA256).
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def checkout_event(
    *,
    session_id: str,
    audit_id: str | None,
    event_type: str = "checkout.session.completed",
    payment_status: str = "paid",
    amount_total: int = 2999,
    email: str | None = "buyer@example.com",
    payment_intent: str | None = "pi_test_webhook",
) -> bytes:
    metadata: dict[str, Any] = {"domain": "shop.example.com"}
    if audit_id is not None:
        metadata["auditId"] = audit_id
    payload = {
        "id": f"evt_{session_id}",
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": payment_status,
                "amount_total": amount_total,
                "currency": "usd",
                "payment_intent": payment_intent,
                "customer_details": {"email": email},
                "metadata": metadata,
            }
        },
    }
    return json.dumps(payload).encode("utf-8")
