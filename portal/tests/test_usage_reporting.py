from datetime import date, datetime, timezone

import pytest

from portal.core.database import health_check_failures, usage_daily
from portal.features.billing.usage_reporting import (
    METER_CREDITS,
    METER_NETWORK_EGRESS,
    METER_OFFLINE_STORAGE,
    METER_ONLINE_STORAGE,
    ORPHAN_ALERT,
    ORPHAN_LOG,
    ORPHAN_MARK_REPORTED,
    UsageReporter,
)
from portal.features.health import failures as checks
from portal.tests.fakes import add_usage, add_user, fetch_all, fetch_one

NOW = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
DAY = date(2026, 3, 9)
DAY_START = int(datetime(2026, 3, 9, tzinfo=timezone.utc).timestamp())


def _reporter(provider, health_log, alerts, policy=ORPHAN_ALERT):
    return UsageReporter(provider, health_log=health_log, alerts=alerts, orphan_policy=policy, now_fn=lambda: NOW)


def _reported(usage_id):
    return fetch_one(usage_daily, usage_daily.c.id == usage_id)["reported_to_stripe"]


def _paying_owner(user_id="owner-1", customer="cus_1"):
    add_user(user_id, billing_mode="postpaid", stripe_customer_id=customer, stripe_subscription_id=f"sub_{user_id}")


def test_reports_prorated_meters_for_yesterday(provider, health_log, alerts):
    _paying_owner()
    usage_id = add_usage("owner-1", DAY, cpu_hours=10, online_storage_gb=30, offline_storage_gb=0, network_egress_gb=2)

    summary = _reporter(provider, health_log, alerts).report_day()

    assert summary.date == "2026-03-09"
    assert summary.reported == 1
    events = {e["event_name"]: e for e in provider.meter_events}
    assert set(events) == {METER_CREDITS, METER_ONLINE_STORAGE, METER_NETWORK_EGRESS}
    assert METER_OFFLINE_STORAGE not in events
    assert events[METER_CREDITS]["value"] == pytest.approx(10.0)
    assert events[METER_ONLINE_STORAGE]["value"] == pytest.approx(1.0)
    assert events[METER_CREDITS]["timestamp"] == DAY_START
    assert events[METER_CREDITS]["identifier"] == f"usage-{usage_id}-{METER_CREDITS}"
    assert _reported(usage_id)


def test_team_member_usage_is_billed_to_owner(provider, health_log, alerts):
    _paying_owner()
    add_user("member-1", account_owner_id="owner-1")
    add_usage("member-1", DAY, account_owner_id="owner-1", gpu_hours=1)

    summary = _reporter(provider, health_log, alerts).report_day(DAY)

    assert summary.reported == 1
    assert provider.meter_events[0]["customer_id"] == "cus_1"


def test_non_billable_owners_are_skipped(provider, health_log, alerts):
    add_user("free-1", billing_mode="free", stripe_customer_id="cus_f")
    add_user("prepaid-1", billing_mode="prepaid")
    free_id = add_usage("free-1", DAY, cpu_hours=1)
    add_usage("prepaid-1", DAY, cpu_hours=1)

    summary = _reporter(provider, health_log, alerts).report_day(DAY)

    assert summary.skipped == 2 and summary.reported == 0
    assert provider.meter_events == []
    assert not _reported(free_id)


def test_failed_rows_are_retried_on_next_run(provider, health_log, alerts):
    _paying_owner()
    _paying_owner("owner-2", "cus_2")
    add_usage("owner-1", DAY, cpu_hours=1)
    failing_id = add_usage("owner-2", DAY, cpu_hours=1)
    provider.fail_meter_for.add("cus_2")

    first = _reporter(provider, health_log, alerts).report_day(DAY)
    assert (first.reported, first.failed) == (1, 1)
    assert not _reported(failing_id)

    provider.fail_meter_for.clear()
    second = _reporter(provider, health_log, alerts).report_day(DAY)
    assert (second.reported, second.failed) == (1, 0)
    assert _reported(failing_id)


def test_orphaned_usage_alerts_by_default(provider, health_log, alerts):
    orphan_id = add_usage("ghost", DAY, cpu_hours=1)

    summary = _reporter(provider, health_log, alerts).report_day(DAY)

    assert summary.orphaned == 1
    assert not _reported(orphan_id)
    recorded = fetch_all(health_check_failures, health_check_failures.c.check_type == checks.ORPHANED_USAGE)
    assert recorded[0]["details"]["usage_id"] == orphan_id
    assert len(alerts.posts) == 1


def test_orphaned_usage_mark_reported_policy(provider, health_log, alerts):
    orphan_id = add_usage("ghost", DAY, cpu_hours=1)

    _reporter(provider, health_log, alerts, ORPHAN_MARK_REPORTED).report_day(DAY)

    assert _reported(orphan_id)
    assert alerts.posts == []


def test_orphaned_usage_log_policy(provider, health_log, alerts):
    orphan_id = add_usage("member-1", DAY, account_owner_id="gone-owner", cpu_hours=1)

    summary = _reporter(provider, health_log, alerts, ORPHAN_LOG).report_day(DAY)

    assert summary.orphaned == 1
    assert not _reported(orphan_id)
    assert fetch_all(health_check_failures) == []
    assert alerts.posts == []


def test_meter_failures_are_recorded_and_alerted(provider, health_log, alerts):
    _paying_owner("owner-2", "cus_2")
    failing_id = add_usage("owner-2", DAY, cpu_hours=1)
    provider.fail_meter_for.add("cus_2")

    _reporter(provider, health_log, alerts).report_day(DAY)

    recorded = fetch_all(health_check_failures, health_check_failures.c.check_type == checks.USAGE_REPORTING)
    assert len(recorded) == 1
    assert recorded[0]["user_id"] == "owner-2"
    assert recorded[0]["details"] == {"usage_id": failing_id, "date": "2026-03-09", "usage_user_id": "owner-2"}
    assert recorded[0]["error"] == "meter rejected"
    assert alerts.posts == ["Usage reporting for 2026-03-09: 1 of 1 rows failed and stay unreported until the next run"]


def test_clean_run_posts_no_alert(provider, health_log, alerts):
    _paying_owner()
    add_usage("owner-1", DAY, cpu_hours=1)

    _reporter(provider, health_log, alerts).report_day(DAY)

    assert alerts.posts == []
    assert fetch_all(health_check_failures) == []
