"""Project quota rules (maxNumProjects on the Hopsworks side)."""

from portal.models.user import User, UserStatus

PAID_PROJECT_LIMIT = 5
FREE_PROJECT_LIMIT = 1


def max_projects(is_team_member: bool, has_subscription: bool, is_prepaid: bool, is_free_tier: bool) -> int:
    # Order matters: flags overlap while billing mode is changing.
    if is_team_member:
        return 0
    if has_subscription or is_prepaid:
        return PAID_PROJECT_LIMIT
    if is_free_tier:
        return FREE_PROJECT_LIMIT
    return 0


def quota_for_user(user: User) -> int:
    if user.status == UserStatus.DELETED:
        return 0
    return max_projects(
        is_team_member=user.is_team_member,
        has_subscription=user.has_subscription,
        is_prepaid=user.is_prepaid,
        is_free_tier=user.is_free_tier,
    )


def is_eligible_for_cluster(user: User, has_payment_method: bool = False) -> bool:
    """Cluster access requires a payment method, prepaid credits or team membership."""
    return user.is_team_member or user.is_prepaid or has_payment_method or user.has_subscription
