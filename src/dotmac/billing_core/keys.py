"""
Deterministic keys for billing events.

Repeated or overlapping processing passes must derive the same key for the
same billing event, so keys are hashes of the event's identity rather than
random ids.
"""

import hashlib
import json
from datetime import datetime
from typing import Any

from dotmac.billing_core.dates import ensure_utc


def generate_hash(data: dict[str, Any]) -> str:
    """Stable SHA-256 hex digest of a JSON-serialisable dict."""
    json_str = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()


def idempotency_key(subscription_id: str, period_start: datetime, retry_count: int) -> str:
    """Payment idempotency key for one charge attempt of one billing period."""
    digest = generate_hash(
        {
            "subscription_id": subscription_id,
            "period_start": ensure_utc(period_start).isoformat(),
            "retry_count": retry_count,
        }
    )
    return f"sub_{digest[:40]}"


def period_invoice_id(subscription_id: str, period_start: datetime) -> str:
    """Invoice id shared by every charge attempt for the period starting at ``period_start``."""
    digest = generate_hash(
        {
            "subscription_id": subscription_id,
            "period_start": ensure_utc(period_start).isoformat(),
        }
    )
    return f"inv_{digest[:32]}"


def charge_invoice_id(idempotency_key: str) -> str:
    """Invoice id for an explicit charge made with a caller-supplied key."""
    return f"inv_{generate_hash({'idempotency_key': idempotency_key})[:32]}"


def plan_change_key(
    subscription_id: str, version: int, new_price_id: str, requested_at: datetime
) -> str:
    """Payment idempotency key for an invoiced immediate plan change."""
    digest = generate_hash(
        {
            "subscription_id": subscription_id,
            "version": version,
            "new_price_id": new_price_id,
            "requested_at": ensure_utc(requested_at).isoformat(),
        }
    )
    return f"chg_{digest[:40]}"


def initial_charge_key(subscription_id: str) -> str:
    """Payment idempotency key for the first charge of a new subscription."""
    return f"new_{generate_hash({'subscription_id': subscription_id, 'charge': 'initial'})[:40]}"
