import random

import pytest

from experiment_engine.core.errors import InvalidAllocation
from experiment_engine.models.experiment import AllocationEntry, Experiment
from experiment_engine.services.traffic_splitter import (
    Bucket,
    TrafficSplitter,
    assign,
    bucket_for,
    build_buckets,
    hash_to_unit,
    validate_allocation,
)


def make_experiment(allocation, experiment_id="exp-1"):
    return Experiment(
        id=experiment_id,
        name="Checkout button",
        site_id="site-1",
        variants=[variant_id for variant_id, _ in allocation],
        control_variant_id=allocation[0][0],
        traffic_allocation=[AllocationEntry(variant_id=v, fraction=f) for v, f in allocation],
        duration=14,
        metrics={"primary": "conversion_rate"}
    )


def test_assignment_is_deterministic():
    buckets = build_buckets([("control", 0.5), ("variant", 0.5)])
    first = assign("exp-1", "visitor-42", buckets)
    assert all(assign("exp-1", "visitor-42", buckets) == first for _ in range(1000))


def test_hash_value_is_stable_and_in_range():
    value = hash_to_unit("exp-1", "visitor-42")
    assert 0 <= value <= 1
    assert hash_to_unit("exp-1", "visitor-42") == value
    assert hash_to_unit("exp-2", "visitor-42") != value


def test_buckets_partition_unit_interval():
    rng = random.Random(7)
    for _ in range(50):
        weights = [rng.randint(0, 100) for _ in range(rng.randint(1, 6))]
        if sum(weights) == 0:
            weights[0] = 1
        total = sum(weights)
        allocation = [(f"v{i}", weight / total) for i, weight in enumerate(weights)]

        buckets = build_buckets(allocation)

        assert buckets[0].lower_bound == 0
        assert buckets[-1].upper_bound == 1.0
        for previous, current in zip(buckets, buckets[1:]):
            assert previous.upper_bound == current.lower_bound
        for _ in range(100):
            assert bucket_for(rng.random(), buckets) in {v for v, _ in allocation}


@pytest.mark.parametrize("allocation", [
    [("control", 0.5), ("variant", 0.47)],
    [("control", 0.55), ("variant", 0.5)],
])
def test_rejects_allocation_not_summing_to_one(allocation):
    with pytest.raises(InvalidAllocation):
        validate_allocation(allocation)


@pytest.mark.parametrize("allocation", [
    [("control", 0.5), ("variant", 0.5)],
    [("control", 0.5), ("variant", 0.4995)],
])
def test_accepts_allocation_within_tolerance(allocation):
    validate_allocation(allocation)


@pytest.mark.parametrize("allocation", [
    [],
    [("control", 0.5), ("control", 0.5)],
    [("control", 1.2), ("variant", -0.2)],
    [("control", True), ("variant", 0)],
])
def test_rejects_malformed_allocation(allocation):
    with pytest.raises(InvalidAllocation):
        validate_allocation(allocation)


def test_value_one_goes_to_last_non_empty_bucket():
    buckets = build_buckets([("control", 0.5), ("variant", 0.5), ("holdout", 0.0)])
    assert bucket_for(1.0, buckets) == "variant"
    assert bucket_for(0.0, buckets) == "control"
    assert bucket_for(0.5, buckets) == "variant"


def test_zero_share_variant_never_assigned():
    buckets = build_buckets([("control", 0.0), ("variant", 1.0)])
    assert {assign("exp-1", f"visitor-{i}", buckets) for i in range(500)} == {"variant"}


def test_bucket_value_out_of_range():
    buckets = (Bucket("control", 0.0, 1.0),)
    with pytest.raises(ValueError):
        bucket_for(1.5, buckets)


def test_split_roughly_follows_allocation():
    buckets = build_buckets([("control", 0.2), ("variant", 0.8)])
    assigned = [assign("exp-1", f"visitor-{i}", buckets) for i in range(5000)]
    share = assigned.count("control") / len(assigned)
    assert 0.17 < share < 0.23


def test_splitter_rebuilds_table_when_allocation_changes():
    splitter = TrafficSplitter()
    experiment = make_experiment([("control", 0.5), ("variant", 0.5)])
    assert splitter.allocations(experiment) == {"control": 0.5, "variant": 0.5}
    assert splitter.buckets_for(experiment) is splitter.buckets_for(experiment)

    experiment.traffic_allocation = [
        AllocationEntry(variant_id="control", fraction=0.0),
        AllocationEntry(variant_id="variant", fraction=1.0),
    ]
    assert splitter.assign_variant(experiment, "visitor-1") == "variant"
