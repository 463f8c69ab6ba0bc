"""
Billing customer record.

Only the facts the billing core needs: identity, tags used by promo code
conditions, and metadata. Profile data lives outside the billing core.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Customer(BaseModel):
    """A billable customer."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    customer_id: str = Field(min_length=1)
    email: str | None = None
    tags: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
