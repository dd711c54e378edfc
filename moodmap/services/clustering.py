"""
clustering.py — Spatial clustering of emotion events.

Three variants behind one entry point, ClusterEngine.cluster():

  kmeans        partition into k groups. Seeds k centroids by sampling
                distinct events, then runs 10 rounds of assign/re-centre.
                O(n·k) per round. Seeding is random unless an `rng` is
                passed, so two calls on the same input may disagree.

  dbscan        density-based. An event with at least `min_points`
                events within `max_distance` km (itself included) seeds a
                cluster that grows breadth-first through every
                density-reachable neighbour. Events never absorbed are
                returned in ClusterResult.noise. O(n²) distance checks.

  hierarchical  agglomerative. Starts from singletons and keeps merging
                the two closest centroids until the closest pair is more
                than `max_distance` km apart. O(n²) per merge, O(n³)
                overall.

All distances are haversine great-circle kilometres (geo_index.distance_km).
Every run builds fresh Cluster objects; ids are only meaningful within
the run that produced them.

The engine refuses working sets larger than `max_events` rather than
degrading silently, and checks an optional Deadline once per outer
iteration so a slow run surfaces as ComputationTimeout.
"""

from __future__ import annotations

import logging
import random
from collections import Counter, deque
from typing import Callable, Optional, Sequence

from moodmap.core.errors import Deadline, InvalidInput, UnsupportedAlgorithm
from moodmap.models.analytics import Cluster, ClusterAlgorithm, ClusterParams, ClusterResult, GeoPoint
from moodmap.models.emotion import EmotionEvent
from moodmap.services.geo_index import distance_km

logger = logging.getLogger(__name__)

KMEANS_ROUNDS = 10

_Point = tuple[float, float]   # (lat, lon)


def _point(event: EmotionEvent) -> _Point:
    return event.latitude, event.longitude


def _distance(a: _Point, b: _Point) -> float:
    return distance_km(a[0], a[1], b[0], b[1])


def _mean_point(points: Sequence[_Point]) -> _Point:
    n = len(points)
    return sum(p[0] for p in points) / n, sum(p[1] for p in points) / n


def _build_cluster(cluster_id: str, members: list[EmotionEvent], centroid: _Point) -> Cluster:
    counts = Counter(e.category for e in members)
    return Cluster(
        id=cluster_id,
        centroid=GeoPoint(lat=centroid[0], lon=centroid[1]),
        members=members,
        size=len(members),
        dominant_category=counts.most_common(1)[0][0] if counts else None,
    )


class ClusterEngine:
    """Dispatches to one clustering variant. Stateless apart from its limits."""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self._algorithms: dict[str, Callable[..., ClusterResult]] = {
            ClusterAlgorithm.KMEANS.value: self._kmeans,
            ClusterAlgorithm.DBSCAN.value: self._dbscan,
            ClusterAlgorithm.HIERARCHICAL.value: self._hierarchical,
        }

    @property
    def algorithms(self) -> list[str]:
        return list(self._algorithms)

    def cluster(
        self,
        events: Sequence[EmotionEvent],
        algorithm: str | ClusterAlgorithm,
        params: Optional[ClusterParams] = None,
        *,
        rng: Optional[random.Random] = None,
        deadline: Optional[Deadline] = None,
    ) -> ClusterResult:
        """
        Partition `events` into spatial clusters.

        Raises UnsupportedAlgorithm for an unknown variant and InvalidInput
        when the working set exceeds max_events. An empty input yields an
        empty result.
        """
        name = algorithm.value if isinstance(algorithm, ClusterAlgorithm) else str(algorithm).lower()
        run = self._algorithms.get(name)
        if run is None:
            raise UnsupportedAlgorithm(name, self._algorithms)

        if len(events) > self.max_events:
            raise InvalidInput(
                f"{len(events)} events exceeds the clustering cap of {self.max_events}; "
                "narrow the filter or paginate"
            )

        params = params or ClusterParams()
        deadline = deadline or Deadline(None)
        if not events:
            return ClusterResult(algorithm=ClusterAlgorithm(name), clusters=[])

        result = run(list(events), params, rng or random.Random(), deadline)
        logger.debug(
            "%s: %d events → %d clusters, %d noise",
            name, len(events), len(result.clusters), len(result.noise),
        )
        return result

    # ── k-means ───────────────────────────────────────────────────────────────

    def _kmeans(
        self, events: list[EmotionEvent], params: ClusterParams, rng: random.Random, deadline: Deadline,
    ) -> ClusterResult:
        points = [_point(e) for e in events]
        k = min(params.k, len(events))
        centroids = [points[i] for i in rng.sample(range(len(points)), k)]
        assignment: list[int] = []

        for _ in range(KMEANS_ROUNDS):
            deadline.check()
            assignment = [self._nearest(p, centroids) for p in points]
            for c in range(k):
                assigned = [points[i] for i, a in enumerate(assignment) if a == c]
                if assigned:
                    centroids[c] = _mean_point(assigned)

        # Final assignment against the last centroids so membership and
        # centroid always agree.
        assignment = [self._nearest(p, centroids) for p in points]
        clusters = []
        for c in range(k):
            members = [events[i] for i, a in enumerate(assignment) if a == c]
            if members:
                clusters.append(_build_cluster(str(c), members, centroids[c]))
        return ClusterResult(algorithm=ClusterAlgorithm.KMEANS, clusters=clusters)

    @staticmethod
    def _nearest(point: _Point, centroids: list[_Point]) -> int:
        best, best_distance = 0, float("inf")
        for index, centroid in enumerate(centroids):
            d = _distance(point, centroid)
            if d < best_distance:
                best, best_distance = index, d
        return best

    # ── DBSCAN ────────────────────────────────────────────────────────────────

    def _dbscan(
        self, events: list[EmotionEvent], params: ClusterParams, rng: random.Random, deadline: Deadline,
    ) -> ClusterResult:
        points = [_point(e) for e in events]
        n = len(points)

        def neighbourhood(i: int) -> list[int]:
            return [j for j in range(n) if _distance(points[i], points[j]) <= params.max_distance]

        visited = [False] * n
        clustered = [False] * n
        clusters: list[Cluster] = []

        for i in range(n):
            if visited[i]:
                continue
            deadline.check()
            seeds = neighbourhood(i)
            if len(seeds) < params.min_points:
                continue

            visited[i] = True
            clustered[i] = True
            member_ids = [i]
            queue = deque(seeds)
            while queue:
                j = queue.popleft()
                if visited[j]:
                    continue
                visited[j] = True
                clustered[j] = True
                member_ids.append(j)
                reach = neighbourhood(j)
                if len(reach) >= params.min_points:
                    queue.extend(reach)

            members = [events[m] for m in member_ids]
            clusters.append(_build_cluster(events[i].id, members, _mean_point([points[m] for m in member_ids])))

        noise = [events[i] for i in range(n) if not clustered[i]]
        return ClusterResult(algorithm=ClusterAlgorithm.DBSCAN, clusters=clusters, noise=noise)

    # ── Agglomerative ─────────────────────────────────────────────────────────

    def _hierarchical(
        self, events: list[EmotionEvent], params: ClusterParams, rng: random.Random, deadline: Deadline,
    ) -> ClusterResult:
        groups: list[tuple[str, list[EmotionEvent], _Point]] = [
            (e.id, [e], _point(e)) for e in events
        ]

        while len(groups) > 1:
            deadline.check()
            best = (float("inf"), -1, -1)
            for a in range(len(groups)):
                for b in range(a + 1, len(groups)):
                    d = _distance(groups[a][2], groups[b][2])
                    if d < best[0]:
                        best = (d, a, b)

            min_distance, a, b = best
            if min_distance > params.max_distance:
                break

            id_a, members_a, _ = groups[a]
            _, members_b, _ = groups[b]
            merged_members = members_a + members_b
            merged = (
                id_a,
                merged_members,
                _mean_point([_point(e) for e in merged_members]),
            )
            del groups[b]
            del groups[a]
            groups.append(merged)

        clusters = [_build_cluster(gid, members, centroid) for gid, members, centroid in groups]
        return ClusterResult(algorithm=ClusterAlgorithm.HIERARCHICAL, clusters=clusters)
