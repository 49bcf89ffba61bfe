"""
Community consensus over a post's vote aggregate.

Both functions are pure: they read counts and never touch the store, so a
consensus can never go stale independently of the aggregate it came from.
"""

from typing import Mapping, Union

from community_votes.models import ConsensusLabel, ConsensusResult, VoteAggregate, VoteCategory

DEFAULT_THRESHOLD_PERCENT = 60.0

# Weights for the trust score, in percent
TRUST_WEIGHTS = {
    VoteCategory.TRUSTED: 100,
    VoteCategory.SUSPICIOUS: 50,
    VoteCategory.UNTRUSTED: 0,
}
NEUTRAL_TRUST_SCORE = 50

Counts = Union[VoteAggregate, Mapping[VoteCategory, int]]


def _normalize(counts: Counts) -> dict:
    if isinstance(counts, VoteAggregate):
        counts = counts.counts()
    result = {category: 0 for category in VoteCategory}
    for key, value in counts.items():
        category = VoteCategory.parse(key)
        if value < 0:
            raise ValueError(f"Negative count for {category.value}: {value}")
        result[category] = int(value)
    return result


def _round_percent(count: int, total: int) -> int:
    """Share of ``total`` as a whole percentage, halves rounded up."""
    return (200 * count + total) // (2 * total)


def classify(counts: Counts, threshold_percent: float = DEFAULT_THRESHOLD_PERCENT) -> ConsensusResult:
    """
    Map vote counts to a consensus label and percentage.

    First match wins:
    1. no votes -> unknown, 0
    2. trusted share >= threshold -> trusted
    3. untrusted share >= threshold -> untrusted
    4. otherwise -> suspicious, with the suspicious share (possibly 0)

    Thresholds are compared on exact shares; only the reported percentage
    is rounded.
    """
    normalized = _normalize(counts)
    total = sum(normalized.values())
    if total == 0:
        return ConsensusResult(label=ConsensusLabel.UNKNOWN, percentage=0)

    for category in (VoteCategory.TRUSTED, VoteCategory.UNTRUSTED):
        if normalized[category] * 100 >= threshold_percent * total:
            return ConsensusResult(
                label=ConsensusLabel(category.value),
                percentage=_round_percent(normalized[category], total),
            )

    return ConsensusResult(
        label=ConsensusLabel.SUSPICIOUS,
        percentage=_round_percent(normalized[VoteCategory.SUSPICIOUS], total),
    )


def trust_score(counts: Counts) -> int:
    """Weighted 0-100 score; 50 when nobody has voted."""
    normalized = _normalize(counts)
    total = sum(normalized.values())
    if total == 0:
        return NEUTRAL_TRUST_SCORE
    weighted = sum(TRUST_WEIGHTS[category] * count for category, count in normalized.items())
    return (2 * weighted + total) // (2 * total)
