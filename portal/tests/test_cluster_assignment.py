"""
Cluster assignment: placement, counters, external account creation and quota.
"""
from unittest.mock import patch

import pytest
from sqlalchemy import insert

from portal.core.database import get_db_session, health_check_failures, hopsworks_clusters, user_hopsworks_assignments, users
from portal.features.clusters.assignment import ClusterAssignmentService
from portal.features.clusters.quota import FREE_PROJECT_LIMIT, PAID_PROJECT_LIMIT
from portal.features.health import failures as checks
from portal.models.billing import utc_now
from portal.tests.fakes import add_assignment, add_cluster, add_user, fetch_all, fetch_one, hopsworks_error


def _cluster(cluster_id):
    return fetch_one(hopsworks_clusters, hopsworks_clusters.c.id == cluster_id)


def _failures(check_type):
    return fetch_all(health_check_failures, health_check_failures.c.check_type == check_type)


def test_assigns_to_least_loaded_cluster_and_creates_backend_user(assignment_service, hopsworks):
    add_cluster("busy", current_users=5)
    add_cluster("quiet", current_users=1)
    add_user("owner-1", billing_mode="prepaid", name="Ada Lovelace")

    result = assignment_service.assign_user_to_cluster("owner-1")

    assert result.success and result.cluster_id == "quiet"
    assert result.backend_synced
    assert _cluster("quiet")["current_users"] == 2
    assert _cluster("busy")["current_users"] == 5

    created = hopsworks.called("create_oauth_user")
    assert created == [("create_oauth_user", "owner-1@example.com", PAID_PROJECT_LIMIT)]
    assignment = fetch_one(user_hopsworks_assignments, user_hopsworks_assignments.c.user_id == "owner-1")
    user = fetch_one(users, users.c.id == "owner-1")
    assert assignment["hopsworks_user_id"] == user["hopsworks_user_id"] is not None
    assert assignment["hopsworks_username"] == user["hopsworks_username"]


def test_assignment_is_idempotent(assignment_service, hopsworks):
    add_cluster()
    add_user("owner-1", billing_mode="prepaid")

    first = assignment_service.assign_user_to_cluster("owner-1")
    second = assignment_service.assign_user_to_cluster("owner-1")

    assert first.success and not first.already_assigned
    assert second.success and second.already_assigned and second.cluster_id == first.cluster_id
    assert _cluster("cluster-1")["current_users"] == 1
    assert len(hopsworks.called("create_oauth_user")) == 1


def test_no_capacity_fails_and_is_recorded(assignment_service):
    add_cluster(current_users=10, max_users=10)
    add_user("owner-1", billing_mode="prepaid")

    result = assignment_service.assign_user_to_cluster("owner-1")

    assert not result.success
    assert result.error == "No available clusters"
    assert result.retryable
    assert len(_failures(checks.CLUSTER_CAPACITY)) == 1


def test_unknown_user_is_not_assigned(assignment_service):
    add_cluster()
    result = assignment_service.assign_user_to_cluster("ghost")
    assert not result.success and result.error == "User not found"
    assert _cluster("cluster-1")["current_users"] == 0


def test_team_member_joins_owner_cluster(assignment_service, hopsworks):
    add_cluster("a", current_users=0)
    add_cluster("b", current_users=4)
    add_user("owner-1", billing_mode="prepaid")
    add_assignment("owner-1", "b", hopsworks_user_id=1, hopsworks_username="owner")
    add_user("member-1", account_owner_id="owner-1")

    result = assignment_service.assign_user_to_cluster("member-1")

    assert result.success and result.cluster_id == "b"
    # Members own no projects of their own
    assert hopsworks.called("create_oauth_user")[0][2] == 0
    assert hopsworks.clusters_seen[-1] == "b"


def test_team_member_waits_for_owner_assignment(assignment_service):
    add_cluster()
    add_user("owner-1", billing_mode="prepaid")
    add_user("member-1", account_owner_id="owner-1")

    result = assignment_service.assign_user_to_cluster("member-1")

    assert not result.success
    assert result.retryable
    assert _cluster("cluster-1")["current_users"] == 0


def test_concurrent_assignment_rolls_back_counter(hopsworks, health_log):
    add_cluster("a")
    add_cluster("b", current_users=3)
    add_user("owner-1", billing_mode="prepaid")

    class RacingService(ClusterAssignmentService):
        def _choose_cluster(self, session, user, record_capacity=True):
            chosen = super()._choose_cluster(session, user, record_capacity)
            # Another request lands its assignment between the read and the insert
            with get_db_session() as other:
                other.execute(
                    insert(user_hopsworks_assignments).values(
                        user_id=user.id, hopsworks_cluster_id="b", assigned_by="other", assigned_at=utc_now()
                    )
                )
            return chosen

    service = RacingService(client_factory=hopsworks.factory, health_log=health_log, sleep=lambda _: None)
    result = service.assign_user_to_cluster("owner-1")

    assert result.success and result.already_assigned
    assert result.cluster_id == "b"
    assert _cluster("a")["current_users"] == 0
    assert hopsworks.called("create_oauth_user") == []


def test_retries_transient_backend_errors(assignment_service, hopsworks):
    add_cluster()
    add_user("owner-1", billing_mode="prepaid")
    hopsworks.fail("create_oauth_user", hopsworks_error(503), hopsworks_error(None, "timeout"))

    result = assignment_service.assign_user_to_cluster("owner-1")

    assert result.backend_synced
    assert len(hopsworks.called("create_oauth_user")) == 3


def test_existing_backend_user_is_looked_up_by_email(assignment_service, hopsworks):
    add_cluster()
    add_user("owner-1", email="ada@example.com", billing_mode="prepaid")
    hopsworks.users[77] = {"id": 77, "username": "ada77", "email": "ada@example.com", "maxNumProjects": 0}
    hopsworks.fail("create_oauth_user", hopsworks_error(409, "User already exists"))

    result = assignment_service.assign_user_to_cluster("owner-1")

    assert result.backend_synced
    assert len(hopsworks.called("create_oauth_user")) == 1
    assert fetch_one(users, users.c.id == "owner-1")["hopsworks_user_id"] == 77
    assert hopsworks.users[77]["maxNumProjects"] == PAID_PROJECT_LIMIT


def test_backend_creation_failure_keeps_assignment(assignment_service, hopsworks):
    add_cluster()
    add_user("owner-1", billing_mode="prepaid")
    hopsworks.fail("create_oauth_user", hopsworks_error(400, "bad request"))

    result = assignment_service.assign_user_to_cluster("owner-1")

    assert result.success and not result.backend_synced
    assert _cluster("cluster-1")["current_users"] == 1
    recorded = _failures(checks.HOPSWORKS_USER_CREATION)
    assert len(recorded) == 1 and recorded[0]["user_id"] == "owner-1"


def test_quota_push_failure_is_recorded(assignment_service, hopsworks):
    add_cluster()
    add_user("owner-1", billing_mode="prepaid")
    hopsworks.fail("set_max_projects", hopsworks_error(500))

    result = assignment_service.assign_user_to_cluster("owner-1")

    assert result.success and not result.backend_synced
    assert fetch_one(users, users.c.id == "owner-1")["hopsworks_user_id"] is not None
    recorded = _failures(checks.PROJECT_QUOTA)
    assert recorded[0]["details"]["expected"] == PAID_PROJECT_LIMIT


def test_sync_quota_never_lowers(assignment_service, hopsworks):
    add_cluster()
    add_user("owner-1", billing_mode="free")
    add_assignment("owner-1", hopsworks_user_id=5, hopsworks_username="owner")
    hopsworks.users[5] = {"id": 5, "maxNumProjects": 3}

    assert assignment_service.sync_quota("owner-1")
    assert hopsworks.users[5]["maxNumProjects"] == 3
    assert hopsworks.called("raise_max_projects") == [("raise_max_projects", 5, FREE_PROJECT_LIMIT)]


def test_provision_existing_creates_missing_backend_user(assignment_service, hopsworks):
    add_cluster(current_users=1)
    add_user("owner-1", billing_mode="prepaid")
    add_assignment("owner-1")

    assert assignment_service.provision_existing("owner-1")
    assert fetch_one(user_hopsworks_assignments)["hopsworks_user_id"] is not None
    # Already provisioned: nothing more to do
    assert assignment_service.provision_existing("owner-1")
    assert len(hopsworks.called("create_oauth_user")) == 1


def test_client_rejection_is_not_retried(assignment_service, hopsworks):
    add_cluster()
    add_user("owner-1", billing_mode="prepaid")
    hopsworks.fail("create_oauth_user", hopsworks_error(400, "invalid email"), hopsworks_error(400, "invalid email"))

    result = assignment_service.assign_user_to_cluster("owner-1")

    assert result.success and not result.backend_synced
    assert len(hopsworks.called("create_oauth_user")) == 1
    assert _failures(checks.HOPSWORKS_USER_CREATION)[0]["details"]["status_code"] == 400


def test_failed_assignment_insert_leaves_counter_untouched(assignment_service, hopsworks):
    add_cluster(current_users=2)
    add_user("owner-1", billing_mode="prepaid")

    with patch("portal.features.clusters.assignment.insert", side_effect=RuntimeError("insert failed")):
        with pytest.raises(RuntimeError):
            assignment_service.assign_user_to_cluster("owner-1")

    assert _cluster("cluster-1")["current_users"] == 2
    assert fetch_all(user_hopsworks_assignments) == []
    assert hopsworks.calls == []


def test_backend_clients_are_closed(assignment_service, hopsworks):
    add_cluster()
    add_user("owner-1", billing_mode="prepaid")

    assignment_service.assign_user_to_cluster("owner-1")
    assignment_service.sync_quota("owner-1")

    assert hopsworks.closed == 2
