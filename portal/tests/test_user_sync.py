import pytest

from portal.core.database import user_hopsworks_assignments, users
from portal.core.errors import NotFoundError, PermissionError
from portal.features.billing.provider import BillingProviderError
from portal.features.clusters.quota import PAID_PROJECT_LIMIT
from portal.features.users.service import UserSyncService
from portal.tests.fakes import add_assignment, add_cluster, add_user, fetch_one


def _assignment(user_id):
    return fetch_one(user_hopsworks_assignments, user_hopsworks_assignments.c.user_id == user_id)


def test_first_login_creates_free_user_without_cluster(assignment_service):
    add_cluster()
    service = UserSyncService(assignment_service=assignment_service)

    result = service.sync_on_login("u1", " Ada@Example.com ", "Ada")

    assert result.created
    assert result.user.email == "ada@example.com"
    assert result.user.billing_mode.value == "free"
    assert not result.cluster_assigned
    assert _assignment("u1") is None


def test_repeat_login_counts_and_keeps_name(assignment_service):
    service = UserSyncService(assignment_service=assignment_service)
    service.sync_on_login("u1", "ada@example.com", "Ada")

    result = service.sync_on_login("u1", "ada@example.com")

    assert not result.created
    row = fetch_one(users, users.c.id == "u1")
    assert row["login_count"] == 2
    assert row["name"] == "Ada"


def test_login_with_payment_method_self_heals_assignment(assignment_service):
    add_cluster()
    add_user("u1", stripe_customer_id="cus_1")
    service = UserSyncService(assignment_service=assignment_service, has_payment_method=lambda customer: customer == "cus_1")

    result = service.sync_on_login("u1", "u1@example.com")

    assert result.cluster_assigned and result.quota_synced
    assert _assignment("u1") is not None


def test_payment_lookup_failure_does_not_block_login(assignment_service):
    add_cluster()
    add_user("u1", stripe_customer_id="cus_1")

    def broken(customer_id):
        raise BillingProviderError("stripe down")

    result = UserSyncService(assignment_service=assignment_service, has_payment_method=broken).sync_on_login("u1", "u1@example.com")

    assert not result.created
    assert not result.cluster_assigned


def test_login_raises_drifted_quota(assignment_service, hopsworks):
    add_cluster(current_users=1)
    add_user("u1", billing_mode="prepaid")
    add_assignment("u1", hopsworks_user_id=10)
    hopsworks.users[10] = {"id": 10, "maxNumProjects": 1}

    result = UserSyncService(assignment_service=assignment_service).sync_on_login("u1", "u1@example.com")

    assert result.quota_synced
    assert hopsworks.users[10]["maxNumProjects"] == PAID_PROJECT_LIMIT


def test_suspended_user_is_not_assigned(assignment_service):
    add_cluster()
    add_user("u1", status="suspended", billing_mode="prepaid")

    result = UserSyncService(assignment_service=assignment_service).sync_on_login("u1", "u1@example.com")

    assert not result.cluster_assigned
    assert _assignment("u1") is None


def test_register_corporate_switches_to_prepaid(assignment_service, hopsworks):
    add_cluster()
    add_user("u1")

    result = UserSyncService(assignment_service=assignment_service).register_corporate("u1", "deal-42")

    row = fetch_one(users, users.c.id == "u1")
    assert row["billing_mode"] == "prepaid"
    assert row["feature_flags"] == {"corporate_ref": "deal-42"}
    assert result.cluster_assigned
    assert hopsworks.called("create_oauth_user")[0][2] == PAID_PROJECT_LIMIT


def test_register_corporate_rejects_members_and_unknown_users(assignment_service):
    add_user("owner-1")
    add_user("member-1", account_owner_id="owner-1")
    service = UserSyncService(assignment_service=assignment_service)

    with pytest.raises(PermissionError):
        service.register_corporate("member-1", "deal-42")
    with pytest.raises(NotFoundError):
        service.register_corporate("ghost", "deal-42")
