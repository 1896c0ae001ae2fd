from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import insert, update

from portal.core.database import get_db_session, health_check_failures, project_member_roles, users
from portal.features.billing.provider import SubscriptionInfo
from portal.features.health import failures as checks
from portal.features.health.integrity import CRITICAL, HIGH, INFO, MEDIUM, IntegrityChecker
from portal.features.health.repair import RepairService
from portal.models.billing import utc_now
from portal.tests.fakes import add_assignment, add_cluster, add_usage, add_user, fetch_all, fetch_one, hopsworks_error


@pytest.fixture
def checker(health_log, alerts, provider):
    return IntegrityChecker(health_log=health_log, alerts=alerts, provider=provider)


@pytest.fixture
def repair(assignment_service, status_service, health_log):
    return RepairService(assignment_service=assignment_service, status_service=status_service, health_log=health_log)


def _checks(report):
    return {(i.check, i.severity) for i in report.issues}


def test_clean_database_reports_nothing(checker, alerts):
    add_cluster(current_users=1)
    add_user("owner-1", hopsworks_user_id=5)
    add_assignment("owner-1", hopsworks_user_id=5)

    report = checker.run()

    assert report.issues == []
    assert alerts.posts == []


def test_identity_desync_is_critical_and_escalated(checker, alerts):
    add_cluster(current_users=1)
    add_user("owner-1", hopsworks_user_id=5)
    add_assignment("owner-1", hopsworks_user_id=6)

    report = checker.run()

    assert ("hopsworks_id_desync", CRITICAL) in _checks(report)
    recorded = fetch_all(health_check_failures, health_check_failures.c.check_type == checks.DATA_INTEGRITY)
    assert recorded[0]["user_id"] == "owner-1"
    assert len(alerts.posts) == 1


def test_counter_drift_is_medium_and_not_escalated(checker, alerts):
    add_cluster("a", current_users=3)
    add_cluster("b", current_users=0)
    add_user("owner-1", hopsworks_user_id=5)
    add_assignment("owner-1", "b", hopsworks_user_id=5)

    report = checker.run()

    drift = {i.details["cluster_id"]: i for i in report.issues if i.check == "cluster_counter_drift"}
    assert set(drift) == {"a", "b"}
    assert drift["a"].severity == MEDIUM
    assert drift["b"].details == {"cluster_id": "b", "current_users": 0, "assigned": 1}
    assert alerts.posts == []


def test_unreported_usage_backlog_is_info_only(health_log, alerts):
    checker = IntegrityChecker(health_log=health_log, alerts=alerts, now_fn=lambda: datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc))
    add_user("owner-1", billing_mode="postpaid", stripe_customer_id="cus_1", stripe_subscription_id="sub_1")
    add_user("member-1", account_owner_id="owner-1", billing_mode=None)
    add_user("free-1")
    add_usage("owner-1", date(2026, 3, 7), cpu_hours=1)
    add_usage("member-1", date(2026, 3, 8), account_owner_id="owner-1", cpu_hours=1)
    add_usage("owner-1", date(2026, 3, 9), cpu_hours=1)
    add_usage("free-1", date(2026, 3, 1), cpu_hours=1)

    report = checker.run()

    assert [(i.check, i.severity) for i in report.issues] == [("unreported_usage_backlog", INFO)]
    assert report.info[0].details == {"count": 2, "oldest": "2026-03-07"}
    assert report.counts() == {CRITICAL: 0, HIGH: 0, MEDIUM: 0, INFO: 1}
    assert fetch_all(health_check_failures) == []
    assert alerts.posts == []


def test_billing_and_provisioning_checks(checker, provider):
    add_cluster(current_users=1)
    add_user("postpaid-1", billing_mode="postpaid")
    add_user("unprovisioned-1")
    add_assignment("unprovisioned-1")
    add_user("canceled-1", billing_mode="postpaid", stripe_customer_id="cus_c", stripe_subscription_id="sub_c")
    add_user("live-1", billing_mode="postpaid", stripe_customer_id="cus_l", stripe_subscription_id="sub_l")
    provider.subscriptions["cus_l"] = SubscriptionInfo(subscription_id="sub_l", status="active")

    found = {(i.check, i.user_id) for i in checker.run().issues}

    assert ("postpaid_without_subscription", "postpaid-1") in found
    assert ("assignment_without_hopsworks_user", "unprovisioned-1") in found
    assert ("subscription_canceled_upstream", "canceled-1") in found
    assert not any(user_id == "live-1" for _, user_id in found)


def test_orphan_memberships_and_stale_failures(checker, health_log):
    add_user("gone", status="deleted")
    with get_db_session() as session:
        session.execute(
            insert(project_member_roles).values(
                member_id="gone", account_owner_id="owner-1", project_name="fraud", project_role="Data scientist", created_at=utc_now()
            )
        )
    failure_id = health_log.record(checks.PROJECT_QUOTA, "boom", user_id="owner-1")
    with get_db_session() as session:
        session.execute(
            update(health_check_failures)
            .where(health_check_failures.c.id == failure_id)
            .values(created_at=utc_now() - timedelta(days=10))
        )

    report = checker.run()

    assert ("orphan_project_membership", MEDIUM) in _checks(report)
    stale = [i for i in report.issues if i.check == "stale_health_failures"]
    assert stale[0].details == {"check_type": checks.PROJECT_QUOTA, "count": 1}
    assert report.counts()[HIGH] == 0


def test_repair_provisions_missing_backend_user(repair, health_log, hopsworks):
    add_cluster(current_users=1)
    add_user("owner-1", billing_mode="prepaid")
    add_assignment("owner-1")
    failure_id = health_log.record(checks.HOPSWORKS_USER_CREATION, "timeout", user_id="owner-1")

    summary = repair.run_repair_pass()

    assert (summary.examined, summary.resolved) == (1, 1)
    row = fetch_one(health_check_failures, health_check_failures.c.id == failure_id)
    assert row["resolved"] and row["resolution"] == "hopsworks user provisioned"
    assert fetch_one(users, users.c.id == "owner-1")["hopsworks_user_id"] is not None

    # Second pass finds nothing to do
    assert repair.run_repair_pass().examined == 0


def test_repair_failure_counts_attempt_without_new_rows(repair, health_log, hopsworks):
    add_cluster(current_users=1)
    add_user("owner-1", billing_mode="prepaid")
    add_assignment("owner-1", hopsworks_user_id=10)
    failure_id = health_log.record(checks.PROJECT_QUOTA, "boom", user_id="owner-1")
    hopsworks.fail("raise_max_projects", hopsworks_error(503, "still down"), hopsworks_error(503, "still down"))

    repair.run_repair_pass()
    summary = repair.run_repair_pass()

    assert summary.still_failing == 1
    rows = fetch_all(health_check_failures)
    assert len(rows) == 1
    assert rows[0]["id"] == failure_id
    assert rows[0]["attempts"] == 2
    assert rows[0]["error"] == "still down"
    assert not rows[0]["resolved"]


def test_repair_assigns_cluster_after_capacity_frees_up(repair, health_log):
    add_cluster(current_users=10, max_users=10)
    add_user("owner-1", billing_mode="prepaid")
    health_log.record(checks.CLUSTER_CAPACITY, "No cluster with available capacity", user_id="owner-1")

    assert repair.run_repair_pass().still_failing == 1
    # Still full: the failed attempt does not add another capacity row
    assert len(fetch_all(health_check_failures)) == 1

    add_cluster("cluster-2")
    summary = repair.run_repair_pass()
    assert summary.resolved == 1


def test_repair_mirrors_status(repair, health_log, hopsworks):
    add_cluster(current_users=1)
    add_user("owner-1", status="suspended")
    add_assignment("owner-1", hopsworks_user_id=10)
    health_log.record(checks.HOPSWORKS_STATUS_SYNC, "boom", user_id="owner-1")

    assert repair.run_repair_pass().resolved == 1
    assert hopsworks.users[10]["status"] == 3


def test_repair_skips_non_repairable_and_resolves_userless(repair, health_log):
    health_log.record(checks.EMAIL_DELIVERY, "bounce", user_id="owner-1")
    health_log.record(checks.CLUSTER_CAPACITY, "full")

    summary = repair.run_repair_pass()

    assert (summary.examined, summary.resolved) == (1, 1)
    unresolved = health_log.list_unresolved()
    assert [r["check_type"] for r in unresolved] == [checks.EMAIL_DELIVERY]
