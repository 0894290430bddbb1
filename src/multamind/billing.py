"""Subscription billing through Stripe: checkout, billing portal and webhooks.

Profiles are only ever moved between plans by webhook events; the checkout
endpoint just records the customer id it creates.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import stripe

from .models import Plan, UserProfile
from .repositories import ProfileRepository

logger = logging.getLogger(__name__)

# Subscription states that keep the paid plan / that drop back to free.
ACTIVE_STATUSES = {"active", "trialing"}
ENDED_STATUSES = {"canceled", "unpaid", "incomplete_expired"}


class BillingError(RuntimeError):
    """The payment processor call failed or billing is not configured."""


class SignatureError(BillingError):
    """A webhook payload did not carry a valid signature."""


def _plan_from_key(key: str) -> Optional[Plan]:
    # "pro_monthly" -> Plan.PRO
    head = key.split("_", 1)[0]
    try:
        return Plan(head)
    except ValueError:
        return None


class BillingService:
    def __init__(
        self,
        profiles: ProfileRepository,
        *,
        secret_key: str,
        webhook_secret: str,
        site_url: str,
        prices: Optional[Dict[str, str]] = None,
        grace_period_days: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.profiles = profiles
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.site_url = site_url.rstrip("/")
        self.prices = {k: v for k, v in (prices or {}).items() if v}
        self.grace_period_days = grace_period_days
        self._clock = clock
        # price id -> plan
        self._plan_by_price = {
            price_id: plan
            for key, price_id in self.prices.items()
            if (plan := _plan_from_key(key)) is not None
        }

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], profiles: ProfileRepository) -> "BillingService":
        billing = cfg.get("billing", {}) or {}
        return cls(
            profiles,
            secret_key=str(billing.get("secret_key") or ""),
            webhook_secret=str(billing.get("webhook_secret") or ""),
            site_url=str((cfg.get("server", {}) or {}).get("site_url") or "http://localhost:9002"),
            prices={k: str(v or "") for k, v in (billing.get("prices") or {}).items()},
            grace_period_days=int(billing.get("grace_period_days", 3)),
        )

    # -------------------------
    # Pricing
    # -------------------------
    def pro_price_ids(self) -> Dict[str, Optional[str]]:
        return {
            "monthly": self.prices.get("pro_monthly"),
            "yearly": self.prices.get("pro_yearly"),
        }

    def plan_for_price(self, price_id: Optional[str]) -> Optional[Plan]:
        return self._plan_by_price.get(price_id or "")

    def _require_key(self) -> str:
        if not self.secret_key:
            raise BillingError("billing.secret_key is not configured")
        return self.secret_key

    # -------------------------
    # Checkout & portal
    # -------------------------
    def get_or_create_customer(self, uid: str, email: Optional[str]) -> str:
        profile = self.profiles.get_or_create(uid, email)
        if profile.billing_customer_id:
            return profile.billing_customer_id
        try:
            customer = stripe.Customer.create(
                api_key=self._require_key(),
                email=email or None,
                metadata={"uid": uid},
            )
        except stripe.StripeError as e:
            raise BillingError(f"Failed to create customer: {e}") from e
        self.profiles.update(uid, billing_customer_id=customer.id)
        logger.info("created billing customer %s for %s", customer.id, uid)
        return customer.id

    def create_checkout_session(self, uid: str, email: Optional[str], price_id: str, quantity: int = 1) -> str:
        """Return the hosted checkout URL for a subscription to ``price_id``."""
        customer_id = self.get_or_create_customer(uid, email)
        plan = self.plan_for_price(price_id) or Plan.PRO
        try:
            session = stripe.checkout.Session.create(
                api_key=self._require_key(),
                mode="subscription",
                customer=customer_id,
                billing_address_collection="required",
                line_items=[{"price": price_id, "quantity": quantity}],
                success_url=f"{self.site_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.site_url}/billing/cancel",
                client_reference_id=uid,
                metadata={"uid": uid, "plan": plan.value},
                subscription_data={"metadata": {"uid": uid}},
            )
        except stripe.StripeError as e:
            raise BillingError(f"Failed to create checkout session: {e}") from e
        if not getattr(session, "url", None):
            raise BillingError("Failed to create checkout session")
        return session.url

    def create_portal_session(self, customer_id: str) -> str:
        try:
            portal = stripe.billing_portal.Session.create(
                api_key=self._require_key(),
                customer=customer_id,
                return_url=f"{self.site_url}/",
            )
        except stripe.StripeError as e:
            raise BillingError(f"Failed to create portal session: {e}") from e
        return portal.url

    # -------------------------
    # Webhooks
    # -------------------------
    def parse_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the signature header and decode the event body."""
        if not signature:
            raise SignatureError("No signature present.")
        if not self.webhook_secret:
            raise BillingError("Webhook secret not configured.")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureError("Payload is not valid UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret, tolerance=300)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(str(e)) from e
        try:
            return json.loads(text)
        except ValueError as e:
            raise SignatureError("Invalid payload") from e

    def handle_event(self, event: Dict[str, Any]) -> Optional[UserProfile]:
        """Apply a verified event to the matching profile; returns it when changed."""
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        handler = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_failed": self._on_payment_failed,
            "invoice.payment_succeeded": self._on_payment_succeeded,
        }.get(event_type)
        if handler is None:
            logger.warning("Unhandled billing event type: %s", event_type)
            return None

        uid = self._resolve_user(obj)
        if uid is None:
            logger.warning("%s %s matches no user", event_type, obj.get("id"))
            return None
        logger.info("handling %s %s for %s", event_type, obj.get("id"), uid)
        return handler(uid, obj)

    def _resolve_user(self, obj: Dict[str, Any]) -> Optional[str]:
        metadata = obj.get("metadata") or {}
        if metadata.get("uid"):
            return str(metadata["uid"])
        if obj.get("client_reference_id"):
            return str(obj["client_reference_id"])
        customer = obj.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        if customer:
            profile = self.profiles.find_by_customer(str(customer))
            if profile is not None:
                return profile.id
        subscription = obj.get("subscription")
        if isinstance(subscription, str):
            profile = self.profiles.find_by_subscription(subscription)
            if profile is not None:
                return profile.id
        return None

    def _grace_deadline(self) -> int:
        return int(self._clock()) + self.grace_period_days * 86400

    def _on_checkout_completed(self, uid: str, session: Dict[str, Any]) -> UserProfile:
        metadata = session.get("metadata") or {}
        try:
            plan = Plan(metadata.get("plan") or Plan.PRO.value)
        except ValueError:
            plan = Plan.PRO
        fields: Dict[str, Any] = {"plan": plan, "plan_status": "active", "grace_until": None}
        if session.get("customer"):
            fields["billing_customer_id"] = session["customer"]
        if session.get("subscription"):
            fields["billing_subscription_id"] = session["subscription"]
        return self.profiles.update(uid, **fields)

    def _on_subscription_changed(self, uid: str, sub: Dict[str, Any]) -> UserProfile:
        status = sub.get("status")
        items = (sub.get("items") or {}).get("data") or []
        price_id = ((items[0] or {}).get("price") or {}).get("id") if items else None
        period_end = sub.get("current_period_end")
        if period_end is None and items:
            # newer API versions report the period on the subscription item
            period_end = items[0].get("current_period_end")

        fields: Dict[str, Any] = {
            "plan_status": status,
            "billing_subscription_id": sub.get("id"),
            "current_period_end": period_end,
            "cancel_at_period_end": bool(sub.get("cancel_at_period_end")),
        }
        if sub.get("customer"):
            fields["billing_customer_id"] = sub["customer"]
        if status in ACTIVE_STATUSES:
            fields["plan"] = self.plan_for_price(price_id) or Plan.PRO
            fields["grace_until"] = None
        elif status == "past_due":
            current = self.profiles.get(uid)
            if current is None or current.grace_until is None:
                fields["grace_until"] = self._grace_deadline()
        elif status in ENDED_STATUSES:
            fields["plan"] = Plan.FREE
            fields["grace_until"] = None
        return self.profiles.update(uid, **fields)

    def _on_subscription_deleted(self, uid: str, sub: Dict[str, Any]) -> UserProfile:
        return self.profiles.update(
            uid,
            plan=Plan.FREE,
            plan_status="canceled",
            billing_subscription_id=None,
            cancel_at_period_end=False,
            grace_until=None,
        )

    def _on_payment_failed(self, uid: str, invoice: Dict[str, Any]) -> UserProfile:
        logger.warning("payment failed for %s (invoice %s)", uid, invoice.get("id"))
        return self.profiles.update(uid, plan_status="past_due", grace_until=self._grace_deadline())

    def _on_payment_succeeded(self, uid: str, invoice: Dict[str, Any]) -> UserProfile:
        return self.profiles.update(uid, plan_status="active", grace_until=None)
