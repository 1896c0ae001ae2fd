"""
Cluster capacity selection.

Pure: works on a snapshot fetched by the caller and never locks rows. The
increment that follows is atomic but may race with other assignments, so a
cluster can end up slightly over max_users. That overshoot is accepted.
"""
from typing import Iterable, Optional

from portal.models.cluster import ClusterCapacity


def select_cluster(clusters: Iterable[ClusterCapacity]) -> Optional[ClusterCapacity]:
    """Least-loaded cluster with room, first one wins ties; None when nothing has room."""
    best: Optional[ClusterCapacity] = None
    for cluster in clusters:
        if cluster.current_users >= cluster.max_users:
            continue
        if best is None or cluster.current_users < best.current_users:
            best = cluster
    return best
