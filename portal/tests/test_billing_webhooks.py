"""
Stripe webhook reconciliation: idempotency, upgrade/downgrade paths and
failure handling after the signature has been verified.
"""
from datetime import datetime, timedelta, timezone

import pytest

from portal.core.database import credit_transactions, health_check_failures, stripe_processed_events, user_credits, user_hopsworks_assignments, users
from portal.features.billing.provider import BillingWebhookError
from portal.features.billing.webhooks import DOWNGRADE_GRACE_PERIOD, BillingWebhookReconciler
from portal.features.clusters.quota import FREE_PROJECT_LIMIT, PAID_PROJECT_LIMIT
from portal.features.health import failures as checks
from portal.tests.fakes import add_assignment, add_cluster, add_user, fetch_all, fetch_one, stripe_event

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
SIGNED = {"stripe-signature": "valid"}


@pytest.fixture
def reconciler(provider, assignment_service, status_service, mailer, alerts, health_log):
    return BillingWebhookReconciler(
        provider,
        assignment_service=assignment_service,
        status_service=status_service,
        mailer=mailer,
        alerts=alerts,
        health_log=health_log,
        now_fn=lambda: NOW,
    )


def _user(user_id="owner-1"):
    return fetch_one(users, users.c.id == user_id)


def _postpaid_owner_with_projects(hopsworks, project_count):
    add_cluster(current_users=1)
    add_user(
        "owner-1",
        billing_mode="postpaid",
        stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1",
        stripe_subscription_status="active",
    )
    add_assignment("owner-1", hopsworks_user_id=10, hopsworks_username="owner10")
    hopsworks.users[10] = {"id": 10, "maxNumProjects": PAID_PROJECT_LIMIT}
    hopsworks.projects["owner10"] = [{"name": f"p{i}"} for i in range(project_count)]


def test_invalid_signature_is_rejected_without_recording(reconciler):
    body = stripe_event("customer.subscription.created", {"id": "sub_1", "customer": "cus_1"})
    with pytest.raises(BillingWebhookError):
        reconciler.handle({"stripe-signature": "forged"}, body)
    assert fetch_all(stripe_processed_events) == []


def test_payment_method_upgrades_free_owner(reconciler, provider, hopsworks):
    add_cluster()
    add_user("owner-1", billing_mode="free", stripe_customer_id="cus_1")

    outcome = reconciler.handle(SIGNED, stripe_event("payment_method.attached", {"id": "pm_1", "customer": "cus_1"}))

    assert outcome.processed and outcome.user_id == "owner-1"
    user = _user()
    assert user["billing_mode"] == "postpaid"
    assert user["stripe_subscription_id"] == "sub_owner-1"
    assert fetch_one(user_hopsworks_assignments, user_hopsworks_assignments.c.user_id == "owner-1") is not None
    assert hopsworks.called("create_oauth_user")[0][2] == PAID_PROJECT_LIMIT


def test_redelivered_event_is_skipped(reconciler, provider):
    add_cluster()
    add_user("owner-1", billing_mode="free", stripe_customer_id="cus_1")
    body = stripe_event("payment_method.attached", {"id": "pm_1", "customer": "cus_1"}, event_id="evt_dup")

    first = reconciler.handle(SIGNED, body)
    provider.subscriptions.clear()
    second = reconciler.handle(SIGNED, body)

    assert first.processed and not first.duplicate
    assert second.duplicate and not second.processed
    assert provider.subscriptions == {}
    rows = fetch_all(stripe_processed_events)
    assert len(rows) == 1 and rows[0]["status"] == "processed"


def test_quota_is_never_lowered_by_upgrade(reconciler, hopsworks):
    add_cluster(current_users=1)
    add_user("owner-1", billing_mode="free", stripe_customer_id="cus_1")
    add_assignment("owner-1", hopsworks_user_id=10, hopsworks_username="owner10")
    hopsworks.users[10] = {"id": 10, "maxNumProjects": 9}

    reconciler.handle(SIGNED, stripe_event("payment_method.attached", {"id": "pm_1", "customer": "cus_1"}))

    assert hopsworks.users[10]["maxNumProjects"] == 9
    assert hopsworks.called("set_max_projects") == []


def test_subscription_deleted_starts_grace_period(reconciler, hopsworks, mailer):
    _postpaid_owner_with_projects(hopsworks, 3)

    reconciler.handle(SIGNED, stripe_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}))

    user = _user()
    assert user["billing_mode"] == "free"
    assert user["stripe_subscription_id"] is None
    assert user["downgrade_deadline"].replace(tzinfo=timezone.utc) == NOW + DOWNGRADE_GRACE_PERIOD
    assert len(mailer.sent) == 1
    # Lowering the backend quota is left to the grace period; only raises are sent
    assert hopsworks.users[10]["maxNumProjects"] == PAID_PROJECT_LIMIT
    assert ("raise_max_projects", 10, FREE_PROJECT_LIMIT) in hopsworks.calls
    assert hopsworks.closed == len(hopsworks.clusters_seen)


def test_repeated_downgrade_keeps_existing_deadline(reconciler, hopsworks, mailer):
    _postpaid_owner_with_projects(hopsworks, 3)
    reconciler.handle(SIGNED, stripe_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}, event_id="evt_a"))
    first_deadline = _user()["downgrade_deadline"]

    reconciler.now_fn = lambda: NOW + timedelta(days=2)
    reconciler.handle(SIGNED, stripe_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}, event_id="evt_b"))

    assert _user()["downgrade_deadline"] == first_deadline
    assert len(mailer.sent) == 1


def test_downgrade_within_free_limit_sets_no_deadline(reconciler, hopsworks, mailer):
    _postpaid_owner_with_projects(hopsworks, 1)

    reconciler.handle(SIGNED, stripe_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}))

    assert _user()["downgrade_deadline"] is None
    assert mailer.sent == []


def test_stale_subscription_deletion_is_ignored(reconciler, hopsworks):
    _postpaid_owner_with_projects(hopsworks, 3)

    reconciler.handle(SIGNED, stripe_event("customer.subscription.deleted", {"id": "sub_old", "customer": "cus_1"}))

    assert _user()["billing_mode"] == "postpaid"


def test_last_payment_method_removed_downgrades(reconciler, provider, hopsworks):
    _postpaid_owner_with_projects(hopsworks, 0)
    body = stripe_event(
        "payment_method.detached",
        {"id": "pm_1", "customer": None},
        previous={"customer": "cus_1"},
    )

    outcome = reconciler.handle(SIGNED, body)

    assert outcome.user_id == "owner-1"
    assert provider.canceled == ["sub_1"]
    assert _user()["billing_mode"] == "free"


def test_processing_error_is_acknowledged_and_recorded(reconciler, provider, hopsworks, alerts):
    _postpaid_owner_with_projects(hopsworks, 0)
    provider.fail_lookups = True
    body = stripe_event("payment_method.detached", {"id": "pm_1", "customer": "cus_1"}, event_id="evt_fail")

    outcome = reconciler.handle(SIGNED, body)

    assert not outcome.processed
    assert "stripe down" in outcome.error
    assert fetch_one(stripe_processed_events)["status"] == "failed"
    recorded = fetch_all(health_check_failures, health_check_failures.c.check_type == checks.WEBHOOK_PROCESSING)
    assert recorded[0]["details"]["event_id"] == "evt_fail"
    assert len(alerts.posts) == 1


def test_paid_invoice_reactivates_suspended_owner(reconciler):
    add_user("owner-1", status="suspended", billing_mode="postpaid", stripe_customer_id="cus_1")

    reconciler.handle(SIGNED, stripe_event("invoice.payment_succeeded", {"id": "in_1", "customer": "cus_1"}))

    assert _user()["status"] == "active"


def test_failed_payment_email_failure_is_recorded(reconciler, mailer):
    add_user("owner-1", billing_mode="postpaid", stripe_customer_id="cus_1")
    mailer.fail = True

    outcome = reconciler.handle(
        SIGNED, stripe_event("invoice.payment_failed", {"id": "in_1", "customer": "cus_1", "amount_due": 4200})
    )

    assert outcome.processed
    recorded = fetch_all(health_check_failures, health_check_failures.c.check_type == checks.EMAIL_DELIVERY)
    assert recorded[0]["details"]["kind"] == "payment_failed"


def test_unknown_customer_is_acknowledged(reconciler):
    outcome = reconciler.handle(SIGNED, stripe_event("invoice.payment_failed", {"id": "in_1", "customer": "cus_nobody"}))
    assert outcome.processed and outcome.user_id is None


def test_team_member_customer_is_ignored(reconciler, mailer):
    add_user("owner-1", billing_mode="postpaid", stripe_customer_id="cus_owner", stripe_subscription_status="active")
    add_user("member-1", account_owner_id="owner-1", billing_mode=None, stripe_customer_id="cus_member")

    for event_id, event_type in [("evt_1", "customer.subscription.updated"), ("evt_2", "invoice.payment_failed")]:
        outcome = reconciler.handle(
            SIGNED,
            stripe_event(event_type, {"id": "obj_1", "customer": "cus_member", "status": "past_due"}, event_id=event_id),
        )
        assert outcome.processed and outcome.user_id is None

    assert _user()["stripe_subscription_status"] == "active"
    assert mailer.sent == []


def test_member_card_removal_leaves_owner_billing_alone(reconciler, provider, hopsworks):
    _postpaid_owner_with_projects(hopsworks, 0)
    add_user("member-1", account_owner_id="owner-1", billing_mode=None, stripe_customer_id="cus_member")
    body = stripe_event("payment_method.detached", {"id": "pm_9", "customer": None}, previous={"customer": "cus_member"})

    outcome = reconciler.handle(SIGNED, body)

    assert outcome.processed and outcome.user_id is None
    assert provider.canceled == []
    assert _user()["billing_mode"] == "postpaid"


def test_owner_card_removal_with_card_left_keeps_postpaid(reconciler, provider, hopsworks):
    _postpaid_owner_with_projects(hopsworks, 0)
    provider.payment_methods["cus_1"] = [{"id": "pm_2"}]
    body = stripe_event("payment_method.detached", {"id": "pm_1", "customer": None}, previous={"customer": "cus_1"})

    reconciler.handle(SIGNED, body)

    assert provider.canceled == []
    assert _user()["billing_mode"] == "postpaid"


def test_event_for_other_customer_of_known_user_is_ignored(reconciler, mailer):
    add_user("owner-1", billing_mode="postpaid", stripe_customer_id="cus_1")

    outcome = reconciler.handle(
        SIGNED,
        stripe_event("invoice.payment_failed", {"id": "in_1", "customer": "cus_stale", "metadata": {"user_id": "owner-1"}}),
    )

    assert outcome.processed and outcome.user_id is None
    assert mailer.sent == []


def test_replayed_subscription_deletion_changes_nothing(reconciler, hopsworks, mailer):
    _postpaid_owner_with_projects(hopsworks, 3)
    body = stripe_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}, event_id="evt_del")
    reconciler.handle(SIGNED, body)
    deadline = _user()["downgrade_deadline"]

    reconciler.now_fn = lambda: NOW + timedelta(days=3)
    replay = reconciler.handle(SIGNED, body)

    assert replay.duplicate and not replay.processed
    assert _user()["downgrade_deadline"] == deadline
    assert len(mailer.sent) == 1
    assert len(fetch_all(stripe_processed_events)) == 1


def test_credit_checkout_adds_prepaid_credits(reconciler):
    add_user("owner-1", billing_mode="prepaid", stripe_customer_id="cus_1", feature_flags={"prepaid_enabled": True})
    session = {
        "id": "cs_1",
        "customer": "cus_1",
        "mode": "payment",
        "payment_status": "paid",
        "metadata": {"user_id": "owner-1", "credit_amount": "100"},
    }

    reconciler.handle(SIGNED, stripe_event("checkout.session.completed", session, event_id="evt_a"))
    # Stripe may send the same session under a new event id
    reconciler.handle(SIGNED, stripe_event("checkout.session.completed", session, event_id="evt_b"))

    assert fetch_one(user_credits, user_credits.c.user_id == "owner-1")["total_purchased"] == 100
    assert [t["stripe_session_id"] for t in fetch_all(credit_transactions)] == ["cs_1"]
    assert _user()["billing_mode"] == "prepaid"


def test_unpaid_credit_checkout_adds_nothing(reconciler):
    add_user("owner-1", billing_mode="prepaid", stripe_customer_id="cus_1")
    session = {
        "id": "cs_2",
        "customer": "cus_1",
        "mode": "payment",
        "payment_status": "unpaid",
        "metadata": {"credit_amount": "25"},
    }

    reconciler.handle(SIGNED, stripe_event("checkout.session.completed", session))

    assert fetch_all(credit_transactions) == []
