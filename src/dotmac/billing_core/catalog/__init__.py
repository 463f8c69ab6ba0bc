"""Plans, prices and add-ons."""

from dotmac.billing_core.catalog.models import UNLIMITED, AddOn, BillingInterval, Plan, Price

__all__ = ["UNLIMITED", "AddOn", "BillingInterval", "Plan", "Price"]
