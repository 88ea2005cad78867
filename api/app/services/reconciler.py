"""
Transaction reconciler: duplicate detection and resolution, no I/O.

Three layers:

  detect_duplicate          one new record vs stored history
  find_duplicates_in_batch  greedy all-pairs clustering inside one batch
  resolve_duplicates        pick the canonical member of a cluster

``reconcile_batch`` chains them for a sync.  Nothing here touches storage;
callers receive keep/remove/flag id lists and apply them in one transaction.

Batch clustering is O(n²) and first-seed-wins: the result depends on input
order and is not transitively closed.  Keep batches to one account and one
sync window.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from app.services.fingerprint import exact_fingerprint, fuzzy_fingerprint
from app.services.records import UNCATEGORIZED, TransactionRecord
from app.services.similarity import similarity

FUZZY_MATCH_THRESHOLD = 0.85
WINDOW_MATCH_THRESHOLD = 0.9
WINDOW_DAYS = 3
CLUSTER_THRESHOLD = 0.85
HIGH_CONFIDENCE = 0.95
MEDIUM_CONFIDENCE = 0.85


class ResolutionStrategy(str, Enum):
    KEEP_LATEST = "keep_latest"
    KEEP_OLDEST = "keep_oldest"
    MERGE = "merge"
    FLAG = "flag"


class ClusterConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ─── Result types ─────────────────────────────────────────────────────────────

@dataclass
class DuplicateCheck:
    is_duplicate: bool
    similarity_score: float
    duplicate_of: str | None = None
    reason: str | None = None


@dataclass
class ClusterMember:
    transaction_id: str
    fingerprint: str
    record: TransactionRecord


@dataclass
class DuplicateCluster:
    cluster_id: str
    members: list[ClusterMember]
    confidence: ClusterConfidence

    @property
    def transaction_ids(self) -> list[str]:
        return [m.transaction_id for m in self.members]


@dataclass
class Resolution:
    keep: list[str] = field(default_factory=list)
    remove: list[str] = field(default_factory=list)
    flag: list[str] = field(default_factory=list)


@dataclass
class ReconcileResult:
    canonical: list[TransactionRecord]
    duplicates: list[DuplicateCluster]
    resolutions: dict[str, Resolution]
    duplicates_found: int = 0

    def cluster_of(self, transaction_id: str) -> DuplicateCluster | None:
        for cluster in self.duplicates:
            if transaction_id in cluster.transaction_ids:
                return cluster
        return None


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _confidence(mean_similarity: float) -> ClusterConfidence:
    if mean_similarity > HIGH_CONFIDENCE:
        return ClusterConfidence.HIGH
    if mean_similarity > MEDIUM_CONFIDENCE:
        return ClusterConfidence.MEDIUM
    return ClusterConfidence.LOW


def _cluster_id(transaction_ids: list[str]) -> str:
    joined = "|".join(sorted(transaction_ids))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


def _member(tx: TransactionRecord) -> ClusterMember:
    return ClusterMember(tx.transaction_id, exact_fingerprint(tx), tx)


def completeness_score(tx: TransactionRecord) -> int:
    """Higher means more fields populated; used by the merge strategy."""
    score = 0
    if tx.merchant_name:
        score += 2
    if tx.category and tx.category != UNCATEGORIZED:
        score += 1
    if tx.description:
        score += 1
    if tx.external_id:
        score += 1
    return score


# ─── Single-record check ──────────────────────────────────────────────────────

def detect_duplicate(
    new: TransactionRecord,
    existing: list[TransactionRecord],
) -> DuplicateCheck:
    """Check ``new`` against stored history; exact key, then fuzzy key, then ±3-day scan."""
    new_exact = exact_fingerprint(new)
    for other in existing:
        if exact_fingerprint(other) == new_exact:
            return DuplicateCheck(True, 1.0, other.transaction_id, "exact match")

    new_fuzzy = fuzzy_fingerprint(new)
    for other in existing:
        if fuzzy_fingerprint(other) != new_fuzzy:
            continue
        score = similarity(new, other)
        if score > FUZZY_MATCH_THRESHOLD:
            return DuplicateCheck(True, score, other.transaction_id, "high similarity, same fuzzy key")

    window = timedelta(days=WINDOW_DAYS)
    for other in existing:
        if abs(other.date - new.date) > window:
            continue
        score = similarity(new, other)
        if score > WINDOW_MATCH_THRESHOLD:
            return DuplicateCheck(True, score, other.transaction_id, "very high similarity within window")

    return DuplicateCheck(False, 0.0)


# ─── Batch clustering ────────────────────────────────────────────────────────

def find_duplicates_in_batch(transactions: list[TransactionRecord]) -> list[DuplicateCluster]:
    clusters: list[DuplicateCluster] = []
    absorbed: set[int] = set()

    for i, seed in enumerate(transactions):
        if i in absorbed:
            continue

        members = [_member(seed)]
        scores: list[float] = [1.0]         # the seed scores itself
        for j in range(i + 1, len(transactions)):
            if j in absorbed:
                continue
            score = similarity(seed, transactions[j])
            if score > CLUSTER_THRESHOLD:
                members.append(_member(transactions[j]))
                scores.append(score)
                absorbed.add(j)

        if len(members) > 1:
            absorbed.add(i)
            clusters.append(DuplicateCluster(
                cluster_id=_cluster_id([m.transaction_id for m in members]),
                members=members,
                confidence=_confidence(sum(scores) / len(members)),
            ))

    return clusters


# ─── Resolution ──────────────────────────────────────────────────────────────

def _ranked(members: list[ClusterMember], strategy: ResolutionStrategy) -> list[ClusterMember]:
    """Members best-first; the head survives."""
    if strategy is ResolutionStrategy.KEEP_LATEST:
        ordered = sorted(members, key=lambda m: m.record.date, reverse=True)
    elif strategy is ResolutionStrategy.KEEP_OLDEST:
        ordered = sorted(members, key=lambda m: m.record.date)
    else:
        # sorted() is stable, so equal scores keep their original order
        ordered = sorted(members, key=lambda m: completeness_score(m.record), reverse=True)
    return ordered


def resolve_duplicates(cluster: DuplicateCluster, strategy: ResolutionStrategy | str) -> Resolution:
    strategy = ResolutionStrategy(strategy)
    if strategy is ResolutionStrategy.FLAG:
        return Resolution(flag=[m.transaction_id for m in cluster.members])

    ordered = _ranked(cluster.members, strategy)
    return Resolution(
        keep=[ordered[0].transaction_id],
        remove=[m.transaction_id for m in ordered[1:]],
    )


# ─── Full pass ───────────────────────────────────────────────────────────────

def reconcile_batch(
    new_transactions: list[TransactionRecord],
    existing_transactions: list[TransactionRecord],
    strategy: ResolutionStrategy | str = ResolutionStrategy.MERGE,
) -> ReconcileResult:
    """
    Deduplicate one ingestion batch against history and within itself.

    A record matching stored history forms a two-member cluster in which the
    stored record always survives.  The rest are clustered among themselves
    and each cluster resolved with ``strategy``.
    """
    strategy = ResolutionStrategy(strategy)
    clusters: list[DuplicateCluster] = []
    resolutions: dict[str, Resolution] = {}
    # by object identity; callers may hand in records whose references collide
    dropped: set[int] = set()
    duplicates_found = 0

    by_id = {tx.transaction_id: tx for tx in existing_transactions}
    fresh: list[TransactionRecord] = []
    for tx in new_transactions:
        check = detect_duplicate(tx, existing_transactions)
        if not check.is_duplicate:
            fresh.append(tx)
            continue
        stored = by_id[check.duplicate_of]
        cluster = DuplicateCluster(
            cluster_id=_cluster_id([stored.transaction_id, tx.transaction_id]),
            members=[_member(stored), _member(tx)],
            confidence=_confidence(check.similarity_score),
        )
        clusters.append(cluster)
        resolutions[cluster.cluster_id] = Resolution(
            keep=[stored.transaction_id], remove=[tx.transaction_id]
        )
        duplicates_found += 1

    for cluster in find_duplicates_in_batch(fresh):
        resolution = resolve_duplicates(cluster, strategy)
        clusters.append(cluster)
        resolutions[cluster.cluster_id] = resolution
        if strategy is not ResolutionStrategy.FLAG:
            dropped.update(id(m.record) for m in _ranked(cluster.members, strategy)[1:])
        duplicates_found += len(cluster.members) - 1

    canonical = [tx for tx in fresh if id(tx) not in dropped]
    return ReconcileResult(
        canonical=canonical,
        duplicates=clusters,
        resolutions=resolutions,
        duplicates_found=duplicates_found,
    )
