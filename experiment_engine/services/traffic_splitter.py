"""
Deterministic traffic splitting.

A visitor's bucket value is derived from SHA-256 over
``"{visitor_id}-{experiment_id}"``: the first 32 bits of the digest as an
unsigned integer, divided by 2^32 - 1. The value is mapped onto contiguous
buckets built by walking the experiment's allocation list in order, so the
same (experiment, visitor, allocation) always yields the same variant, across
processes and restarts.
"""

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Sequence, Tuple

from ..core.errors import InvalidAllocation
from ..models.experiment import AllocationEntry, Experiment

logger = logging.getLogger(__name__)

ALLOCATION_TOLERANCE = 0.001
HASH_SCALE = 0xFFFFFFFF


@dataclass(frozen=True)
class Bucket:
    variant_id: str
    lower_bound: float
    upper_bound: float


def _pairs(allocation: Iterable) -> Tuple[Tuple[str, float], ...]:
    pairs = []
    for entry in allocation:
        if isinstance(entry, AllocationEntry):
            pairs.append((entry.variant_id, entry.fraction))
        else:
            variant_id, fraction = entry
            pairs.append((variant_id, fraction))
    return tuple(pairs)


def validate_allocation(allocation: Iterable) -> None:
    """Raise InvalidAllocation unless the fractions form a valid partition of [0, 1]."""
    pairs = _pairs(allocation)
    if not pairs:
        raise InvalidAllocation("Traffic allocation not defined")

    variant_ids = [variant_id for variant_id, _ in pairs]
    if len(variant_ids) != len(set(variant_ids)):
        raise InvalidAllocation("Traffic allocation lists a variant more than once")

    for variant_id, fraction in pairs:
        if isinstance(fraction, bool) or not isinstance(fraction, (int, float)) or not 0 <= fraction <= 1:
            raise InvalidAllocation(
                f"Traffic allocation for {variant_id} must be a number between 0 and 1, got {fraction}"
            )

    total = sum(fraction for _, fraction in pairs)
    if abs(total - 1) > ALLOCATION_TOLERANCE:
        raise InvalidAllocation(
            f"Total traffic allocation must be 1.0, got {total}",
            {"total": total}
        )


def build_buckets(allocation: Iterable) -> Tuple[Bucket, ...]:
    """Contiguous buckets in allocation order; the last one ends exactly at 1.0."""
    pairs = _pairs(allocation)
    validate_allocation(pairs)

    buckets = []
    cumulative = 0.0
    for variant_id, fraction in pairs:
        lower_bound = cumulative
        cumulative += fraction
        buckets.append(Bucket(variant_id, lower_bound, cumulative))

    last = buckets[-1]
    buckets[-1] = Bucket(last.variant_id, last.lower_bound, 1.0)
    return tuple(buckets)


def hash_to_unit(experiment_id: str, visitor_id: str) -> float:
    digest = hashlib.sha256(f"{visitor_id}-{experiment_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") / HASH_SCALE


def bucket_for(value: float, buckets: Sequence[Bucket]) -> str:
    """
    Variant whose bucket contains ``value``.

    Buckets are half-open except the final non-empty one, which is closed at
    1.0; empty buckets never receive traffic.
    """
    if not 0 <= value <= 1:
        raise ValueError(f"Bucket value out of range: {value}")

    for bucket in buckets:
        if bucket.lower_bound <= value < bucket.upper_bound:
            return bucket.variant_id

    non_empty = [bucket for bucket in buckets if bucket.upper_bound > bucket.lower_bound]
    return non_empty[-1].variant_id


def assign(experiment_id: str, visitor_id: str, buckets: Sequence[Bucket]) -> str:
    """Assign a visitor to a variant deterministically."""
    if not buckets:
        raise InvalidAllocation("Traffic allocation not defined")
    return bucket_for(hash_to_unit(experiment_id, visitor_id), buckets)


class TrafficSplitter:
    """
    Per-experiment cache of immutable bucket tables.

    A table is rebuilt and swapped in only when the experiment's allocation
    differs from the one it was built from; readers never see a partially
    built table.
    """

    def __init__(self):
        self._tables: Dict[str, Tuple[Tuple[Tuple[str, float], ...], Tuple[Bucket, ...]]] = {}
        self._lock = threading.Lock()

    def buckets_for(self, experiment: Experiment) -> Tuple[Bucket, ...]:
        allocation = _pairs(experiment.traffic_allocation)
        cached = self._tables.get(experiment.id)
        if cached is not None and cached[0] == allocation:
            return cached[1]

        with self._lock:
            cached = self._tables.get(experiment.id)
            if cached is not None and cached[0] == allocation:
                return cached[1]
            buckets = build_buckets(allocation)
            self._tables[experiment.id] = (allocation, buckets)
            logger.info(f"Built bucket table for experiment: {experiment.id}")
            return buckets

    def assign_variant(self, experiment: Experiment, visitor_id: str) -> str:
        return assign(experiment.id, visitor_id, self.buckets_for(experiment))

    def allocations(self, experiment: Experiment) -> Dict[str, float]:
        return {
            bucket.variant_id: bucket.upper_bound - bucket.lower_bound
            for bucket in self.buckets_for(experiment)
        }

    def invalidate(self, experiment_id: str) -> None:
        with self._lock:
            self._tables.pop(experiment_id, None)
