"""
Billing webhook reconciler.

Drives a user's billing state from Stripe events:

    free -> postpaid (payment method added / subscription created)
    postpaid -> free (subscription deleted, or last payment method removed)

Completed payment-mode checkouts carrying credit_amount metadata add prepaid
credits. Events whose customer is not the billed owner's are ignored.

Every event is verified, then claimed in stripe_processed_events before any
other work. Redelivery of a claimed event id is a no-op. Once the signature
has passed the event is always acknowledged: processing errors are logged,
recorded and alerted instead of being returned to Stripe.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, ContextManager, Dict, Optional, Tuple

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portal.core.database import get_db_session, stripe_processed_events, users
from portal.core.logging import log_context
from portal.features.billing.credits import record_credit_purchase
from portal.features.billing.provider import BillingEvent, BillingProvider, BillingProviderError
from portal.features.clusters.assignment import ClusterAssignmentService
from portal.features.clusters.quota import FREE_PROJECT_LIMIT, PAID_PROJECT_LIMIT
from portal.features.health import failures as checks
from portal.features.health.failures import HealthCheckLog
from portal.features.hopsworks.client import HopsworksError
from portal.features.notifications.alerts import SlackAlerter
from portal.features.notifications.email import NotificationError, downgrade_notice_email, payment_failed_email
from portal.features.users.service import load_billing_owner, load_user, load_user_by_customer
from portal.features.users.status import UserStatusService
from portal.models.billing import BillingMode, SubscriptionStatus, utc_now
from portal.models.user import User, UserStatus

logger = logging.getLogger("portal.billing.webhooks")

DOWNGRADE_GRACE_PERIOD = timedelta(days=7)

SessionFactory = Callable[[], ContextManager[Session]]


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool = False
    processed: bool = False
    user_id: Optional[str] = None
    error: Optional[str] = None


class BillingWebhookReconciler:
    def __init__(
        self,
        provider: BillingProvider,
        *,
        assignment_service: ClusterAssignmentService,
        status_service: UserStatusService,
        mailer,
        alerts: Optional[SlackAlerter] = None,
        health_log: Optional[HealthCheckLog] = None,
        session_factory: SessionFactory = get_db_session,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.provider = provider
        self.assignment_service = assignment_service
        self.status_service = status_service
        self.mailer = mailer
        self.alerts = alerts or SlackAlerter()
        self.health_log = health_log or HealthCheckLog(session_factory)
        self.session_factory = session_factory
        self.now_fn = now_fn
        self._handlers: Dict[str, Callable[[BillingEvent, User], None]] = {
            "customer.subscription.created": self._on_subscription_created,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "checkout.session.completed": self._on_checkout_completed,
            "payment_method.attached": self._on_payment_method_attached,
            "payment_method.detached": self._on_payment_method_detached,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "invoice.payment_succeeded": self._on_invoice_payment_succeeded,
        }

    def handle(self, headers: Dict[str, str], body: bytes) -> WebhookOutcome:
        """Verify, dedupe and apply one webhook delivery.

        Raises:
            BillingWebhookError: signature or payload invalid (nothing recorded)
        """
        event = self.provider.verify_event(headers, body)
        outcome = WebhookOutcome(event_id=event.event_id, event_type=event.event_type)

        if not self._claim_event(event):
            logger.info("webhook.duplicate", extra={"event_id": event.event_id, "event_type": event.event_type})
            outcome.duplicate = True
            return outcome

        try:
            handler = self._handlers.get(event.event_type)
            if handler is None:
                logger.info("webhook.ignored", extra={"event_id": event.event_id, "event_type": event.event_type})
            else:
                user, skip_reason = self._resolve_user(event)
                if user is None:
                    logger.warning(
                        f"webhook.{skip_reason}",
                        extra={"event_id": event.event_id, "event_type": event.event_type, "customer_id": self._customer_for(event)},
                    )
                else:
                    outcome.user_id = user.id
                    with log_context(user_id=user.id):
                        handler(event, user)
            self._finish_event(event.event_id, "processed")
            outcome.processed = True
        except Exception as e:
            logger.exception(
                "webhook.processing_failed",
                extra={"event_id": event.event_id, "event_type": event.event_type, "user_id": outcome.user_id},
            )
            outcome.error = str(e)
            self._finish_event(event.event_id, "failed", str(e))
            self.health_log.record(
                checks.WEBHOOK_PROCESSING,
                str(e),
                user_id=outcome.user_id,
                details={"event_id": event.event_id, "event_type": event.event_type},
            )
            self.alerts.post(
                f":rotating_light: Stripe webhook {event.event_type} ({event.event_id}) failed"
                f" for user {outcome.user_id or 'unknown'}: {e}"
            )
        return outcome

    # Bookkeeping

    def _claim_event(self, event: BillingEvent) -> bool:
        try:
            with self.session_factory() as session:
                session.execute(
                    insert(stripe_processed_events).values(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        status="processing",
                        processed_at=self.now_fn(),
                    )
                )
            return True
        except IntegrityError:
            return False

    def _finish_event(self, event_id: str, status: str, error: Optional[str] = None) -> None:
        try:
            with self.session_factory() as session:
                session.execute(
                    update(stripe_processed_events)
                    .where(stripe_processed_events.c.event_id == event_id)
                    .values(status=status, error=error, processed_at=self.now_fn())
                )
        except Exception:
            logger.exception("webhook.finish_failed", extra={"event_id": event_id})

    def _customer_for(self, event: BillingEvent) -> Optional[str]:
        if event.event_type == "payment_method.detached":
            # Detached payment methods no longer carry the customer
            return event.previous_attributes.get("customer") or event.customer_id
        return event.customer_id

    def _resolve_user(self, event: BillingEvent) -> Tuple[Optional[User], Optional[str]]:
        """The billing owner the event applies to, or (None, reason) when it applies to nobody.

        Only the owner's own customer drives billing state. An event on a team
        member's customer (left over from before they joined) is ignored, as is
        one whose customer differs from the one stored on the owner.
        """
        customer_id = self._customer_for(event)
        with self.session_factory() as session:
            user = load_user_by_customer(session, customer_id) if customer_id else None
            if user is None:
                metadata_user_id = (event.data.get("metadata") or {}).get("user_id")
                user = load_user(session, metadata_user_id) if metadata_user_id else None
            if user is None:
                return None, "user_not_found"
            if user.is_team_member:
                owner = load_billing_owner(session, user)
                logger.warning(
                    "webhook.team_member_customer_ignored",
                    extra={"member_id": user.id, "owner_id": owner.id, "customer_id": customer_id},
                )
                return None, "team_member_customer"
        if customer_id and user.stripe_customer_id and customer_id != user.stripe_customer_id:
            return None, "customer_mismatch"
        return user, None

    def _update_user(self, user_id: str, **values) -> None:
        values["updated_at"] = self.now_fn()
        with self.session_factory() as session:
            session.execute(update(users).where(users.c.id == user_id).values(**values))

    def _reload(self, user_id: str) -> User:
        with self.session_factory() as session:
            return load_user(session, user_id)

    # Handlers

    def _on_subscription_created(self, event: BillingEvent, user: User) -> None:
        subscription_id = event.data.get("id")
        status = event.data.get("status")
        values = {
            "stripe_subscription_id": subscription_id,
            "stripe_subscription_status": status,
            "downgrade_deadline": None,
        }
        if user.billing_mode != BillingMode.PREPAID:
            values["billing_mode"] = BillingMode.POSTPAID.value
        self._update_user(user.id, **values)
        logger.info("billing.subscription_created", extra={"user_id": user.id, "subscription_id": subscription_id})
        self._ensure_cluster_access(user.id)

    def _on_subscription_updated(self, event: BillingEvent, user: User) -> None:
        status = event.data.get("status")
        self._update_user(user.id, stripe_subscription_status=status)
        logger.info("billing.subscription_updated", extra={"user_id": user.id, "status": status})

    def _on_subscription_deleted(self, event: BillingEvent, user: User) -> None:
        subscription_id = event.data.get("id")
        if user.stripe_subscription_id and subscription_id and user.stripe_subscription_id != subscription_id:
            logger.info(
                "billing.stale_subscription_deleted",
                extra={"user_id": user.id, "subscription_id": subscription_id},
            )
            return
        self._downgrade_to_free(user, trigger="subscription_deleted")

    def _on_checkout_completed(self, event: BillingEvent, user: User) -> None:
        if event.data.get("mode") == "payment" and (event.data.get("metadata") or {}).get("credit_amount"):
            self._record_credit_purchase(event, user)
            return
        if event.data.get("mode") != "setup":
            logger.info("billing.checkout_ignored", extra={"user_id": user.id, "mode": event.data.get("mode")})
            return
        self._on_payment_method_added(user)

    def _record_credit_purchase(self, event: BillingEvent, user: User) -> None:
        if event.data.get("payment_status") not in (None, "paid"):
            logger.info("credits.payment_pending", extra={"user_id": user.id, "payment_status": event.data.get("payment_status")})
            return
        amount = float(event.data["metadata"]["credit_amount"])
        with self.session_factory() as session:
            recorded = record_credit_purchase(session, user.id, amount, event.data.get("id") or event.event_id, self.now_fn())
        logger.info("credits.purchased", extra={"user_id": user.id, "amount": amount, "recorded": recorded})

    def _on_payment_method_attached(self, event: BillingEvent, user: User) -> None:
        self._on_payment_method_added(user)

    def _on_payment_method_added(self, user: User) -> None:
        if user.status == UserStatus.SUSPENDED:
            self.status_service.reactivate_user(user.id, reason="payment_method_added")

        if user.billing_mode == BillingMode.PREPAID:
            self._ensure_cluster_access(user.id)
            return

        upgraded = user.billing_mode in (None, BillingMode.FREE)
        if upgraded:
            self._update_user(user.id, billing_mode=BillingMode.POSTPAID.value, downgrade_deadline=None)
            logger.info("billing.upgraded_to_postpaid", extra={"user_id": user.id})

        if not user.stripe_subscription_id and user.stripe_customer_id:
            self._ensure_subscription(user)

        self._ensure_cluster_access(user.id)
        if upgraded:
            self._raise_quota(user, PAID_PROJECT_LIMIT)

    def _on_payment_method_detached(self, event: BillingEvent, user: User) -> None:
        if user.billing_mode == BillingMode.PREPAID:
            return
        # Cards are counted on the owner's customer, never on the one in the event
        customer_id = user.stripe_customer_id or self._customer_for(event)
        remaining = self.provider.list_payment_methods(customer_id)
        if remaining:
            logger.info("billing.payment_method_removed", extra={"user_id": user.id, "remaining": len(remaining)})
            return

        if user.stripe_subscription_id:
            self.provider.cancel_subscription(user.stripe_subscription_id)
        self._downgrade_to_free(user, trigger="payment_method_detached")

    def _on_invoice_payment_failed(self, event: BillingEvent, user: User) -> None:
        amount_due = event.data.get("amount_due")
        subject, body = payment_failed_email(
            amount_due / 100 if amount_due is not None else None,
            event.data.get("currency") or "usd",
        )
        self._send_email(user, subject, body, "payment_failed")
        logger.info("billing.payment_failed", extra={"user_id": user.id, "invoice_id": event.data.get("id")})

    def _on_invoice_payment_succeeded(self, event: BillingEvent, user: User) -> None:
        if user.status == UserStatus.SUSPENDED:
            self.status_service.reactivate_user(user.id, reason="invoice_paid")

    # Shared paths

    def _ensure_subscription(self, user: User) -> None:
        try:
            info = self.provider.get_subscription(user.stripe_customer_id)
            if info is None:
                info = self.provider.create_metered_subscription(user.stripe_customer_id, user.id)
                logger.info("billing.subscription_started", extra={"user_id": user.id, "subscription_id": info.subscription_id})
            self._update_user(
                user.id,
                stripe_subscription_id=info.subscription_id,
                stripe_subscription_status=info.status,
            )
        except BillingProviderError as e:
            self.health_log.record(checks.STRIPE_SYNC, str(e), user_id=user.id, email=user.email)

    def _ensure_cluster_access(self, user_id: str) -> None:
        result = self.assignment_service.assign_user_to_cluster(user_id, assigned_by="billing_webhook")
        if not result.success:
            logger.warning("billing.cluster_assignment_failed", extra={"user_id": user_id, "error": result.error})
        elif result.already_assigned:
            self.assignment_service.sync_quota(user_id)

    def _raise_quota(self, user: User, target: int) -> None:
        with self.assignment_service.client_for_user(user.id) as (client, assignment):
            if client is None or assignment is None or assignment.hopsworks_user_id is None:
                return
            try:
                client.raise_max_projects(assignment.hopsworks_user_id, target)
            except HopsworksError as e:
                self.health_log.record(
                    checks.PROJECT_QUOTA,
                    e.message,
                    user_id=user.id,
                    email=user.email,
                    details={"expected": target, "hopsworks_user_id": assignment.hopsworks_user_id},
                )

    def _count_projects(self, user: User) -> int:
        with self.assignment_service.client_for_user(user.id) as (client, assignment):
            username = (assignment.hopsworks_username if assignment else None) or user.hopsworks_username
            if client is None or not username:
                return 0
            try:
                return len(client.list_user_projects(username))
            except HopsworksError as e:
                self.health_log.record(checks.PROJECT_LOOKUP, e.message, user_id=user.id, email=user.email)
                return 0

    def _downgrade_to_free(self, user: User, *, trigger: str) -> None:
        now = self.now_fn()
        current = self._reload(user.id) or user
        existing_deadline = current.downgrade_deadline
        in_grace = existing_deadline is not None and existing_deadline > now

        project_count = self._count_projects(current)
        if in_grace:
            deadline = existing_deadline
        elif project_count > FREE_PROJECT_LIMIT:
            deadline = now + DOWNGRADE_GRACE_PERIOD
        else:
            deadline = None

        self._update_user(
            user.id,
            billing_mode=BillingMode.FREE.value,
            stripe_subscription_id=None,
            stripe_subscription_status=SubscriptionStatus.CANCELED.value,
            downgrade_deadline=deadline,
        )
        logger.info(
            "billing.downgraded_to_free",
            extra={"user_id": user.id, "trigger": trigger, "projects": project_count, "deadline": deadline, "kept_deadline": in_grace},
        )

        if deadline is not None and not in_grace:
            subject, body = downgrade_notice_email(project_count, deadline)
            self._send_email(current, subject, body, "downgrade_notice")

        self._raise_quota(current, FREE_PROJECT_LIMIT)

    def _send_email(self, user: User, subject: str, body: str, kind: str) -> None:
        try:
            self.mailer.send(user.email, subject, body)
        except NotificationError as e:
            self.health_log.record(
                checks.EMAIL_DELIVERY,
                str(e),
                user_id=user.id,
                email=user.email,
                details={"kind": kind},
            )
