"""
Tests for ranges, partitions and round configuration checks.
Run: pytest tests/test_config.py -q
"""
import pandas as pd
import pytest

from config import (COLLECT, DISTRIBUTE, EXCHANGE, Partition, PhaseTiming, RoundConfig, SessionType,
                    ValueRange, default_phases, load_partition_csv)
from errors import ConfigurationError, RangeError


def test_value_range_bounds():
    r = ValueRange(-20, 20)
    assert len(r) == 41
    assert r.contains(-20) and r.contains(20)
    assert not r.contains(21)

    half_open = ValueRange(50, 100, inclusive=False)
    assert half_open.max_value == 99
    assert not half_open.contains(100)


def test_value_range_arithmetic():
    assert ValueRange(-20, 20).scaled(2) == ValueRange(-40, 40)
    assert ValueRange(0, 10).shifted(ValueRange(50, 100, inclusive=False)) == ValueRange(50, 109)


def test_empty_value_range_rejected():
    with pytest.raises(ConfigurationError):
        ValueRange(5, 5, inclusive=False)
    with pytest.raises(ConfigurationError):
        ValueRange(5, 4)


def test_odd_even_partition():
    p = Partition.odd_even(4)
    assert p.members_of("lead0") == [0, 2]
    assert p.members_of("lead1") == [1, 3]
    assert p.aggregators() == ["lead0", "lead1"]
    p.validate(range(4))


def test_partition_rejects_double_assignment():
    with pytest.raises(ConfigurationError):
        Partition([(0, "a"), (1, "b"), (0, "b")])


def test_partition_repeated_identical_assignment_is_fine():
    p = Partition([(0, "a"), (0, "a"), (1, "b")])
    assert len(p) == 2


def test_partition_must_cover_every_member():
    config = RoundConfig(4, partition=Partition({0: "a", 1: "b", 2: "a"}))
    with pytest.raises(ConfigurationError, match="missing"):
        config.validate()


def test_partition_must_not_name_unknown_members():
    config = RoundConfig(2, partition=Partition({0: "a", 1: "b", 5: "a"}))
    with pytest.raises(ConfigurationError, match="unknown"):
        config.validate()


def test_unpaired_aggregator_rejected():
    config = RoundConfig(3, partition=Partition({0: "a", 1: "b", 2: "c"}))
    with pytest.raises(ConfigurationError):
        config.validate()


def test_aggregator_in_two_pairs_rejected():
    partition = Partition({0: "a", 1: "b", 2: "c"})
    config = RoundConfig(3, partition=partition, pairs=[("a", "b"), ("b", "c")])
    with pytest.raises(ConfigurationError, match="more than one pair"):
        config.validate()


def test_explicit_pairs():
    partition = Partition({0: "a", 1: "b", 2: "c", 3: "d"})
    config = RoundConfig(4, partition=partition, pairs=[("a", "c"), ("b", "d")])
    config.validate()
    assert config.pairs() == [("a", "c"), ("b", "d")]


def test_aggregator_ids_must_differ_from_member_ids():
    config = RoundConfig(2, partition=Partition({0: 1, 1: 2}))
    with pytest.raises(ConfigurationError, match="collide"):
        config.validate()


def test_missing_phase_timing_rejected():
    phases = default_phases()
    del phases[COLLECT]
    config = RoundConfig(4, phases=phases)
    with pytest.raises(ConfigurationError, match="collect"):
        config.validate()
    # A distribute-only round does not need the collect phase.
    config.validate([SessionType.DISTRIBUTE_ONLY])


def test_inverted_phase_timing_rejected():
    phases = default_phases()
    phases[EXCHANGE] = PhaseTiming(40, 5)
    with pytest.raises(ConfigurationError):
        RoundConfig(4, phases=phases).validate()


def test_phase_beyond_round_period_rejected():
    phases = default_phases()
    phases[DISTRIBUTE] = PhaseTiming(45, 200)
    with pytest.raises(ConfigurationError, match="round period"):
        RoundConfig(4, phases=phases).validate()


def test_unknown_session_type_rejected(config4):
    with pytest.raises(ConfigurationError):
        config4.validate(["sideways"])


def test_report_range(config4):
    assert config4.offset_range == ValueRange(-40, 40)
    assert config4.report_range == ValueRange(-40, 100040)
    remasked = RoundConfig(4, remask_enabled=True)
    assert remasked.report_range == ValueRange(10, 100139)


def test_session_type_from_type_op():
    assert SessionType.from_type_op(1) == SessionType.BIDIRECTIONAL
    assert SessionType.from_type_op("2") == SessionType.DISTRIBUTE_ONLY
    assert SessionType.from_type_op(3) == SessionType.COLLECT_ONLY
    with pytest.raises(ConfigurationError):
        SessionType.from_type_op(7)


def test_load_partition_csv(tmp_path):
    path = tmp_path / "partition.csv"
    pd.DataFrame({"member_id": [0, 1, 2], "aggregator_id": ["north", "south", "north"]}).to_csv(path, index=False)
    p = load_partition_csv(path)
    assert p.members_of("north") == [0, 2]
    assert p.aggregator_of(1) == "south"


def test_load_partition_csv_missing_column(tmp_path):
    path = tmp_path / "partition.csv"
    pd.DataFrame({"member_id": [0, 1]}).to_csv(path, index=False)
    with pytest.raises(ConfigurationError):
        load_partition_csv(path)


def test_value_range_check():
    r = ValueRange(-20, 20)
    assert r.check(20, "mask") == 20
    with pytest.raises(RangeError) as excinfo:
        r.check(21, "mask")
    assert (excinfo.value.what, excinfo.value.value, excinfo.value.low, excinfo.value.high) == ("mask", 21, -20, 20)
    assert str(excinfo.value) == "mask 21 outside [-20, 20]"


@pytest.mark.parametrize("n, expected", [
    (1, 0.5),
    (4, 0.5),
    (90, 0.5),
    (128, 45.0 / 128),
    (200, 45.0 / 200),
])
def test_report_spacing_fits_collection_window(n, expected):
    config = RoundConfig(n)
    spacing = config.report_spacing(n)
    assert spacing == pytest.approx(expected)
    timing = config.phases[COLLECT]
    assert timing.start + (n - 1) * spacing < timing.stop


def test_report_spacing_leaves_room_for_jitter():
    config = RoundConfig(200, start_jitter=(0.001, 0.009))
    spacing = config.report_spacing(200)
    timing = config.phases[COLLECT]
    assert timing.start + 199 * spacing + 0.009 < timing.stop


def test_single_gateway_config():
    config = RoundConfig(5, single_gateway=True)
    config.validate()
    assert config.partition.aggregators() == ["gateway"]
    assert config.pairs() == [("gateway",)]


def test_single_gateway_rejects_pairs():
    config = RoundConfig(4, partition=Partition.odd_even(4), single_gateway=True,
                         pairs=[("lead0", "lead1")])
    with pytest.raises(ConfigurationError, match="Invalid aggregator pair"):
        config.validate()


def test_paired_layout_rejects_lone_aggregator():
    config = RoundConfig(2, partition=Partition({0: "g", 1: "g"}), pairs=[("g",)])
    with pytest.raises(ConfigurationError, match="Invalid aggregator pair"):
        config.validate()


def test_start_jitter_validation():
    RoundConfig(4, start_jitter=(0.001, 0.009)).validate()
    with pytest.raises(ConfigurationError, match="start_jitter"):
        RoundConfig(4, start_jitter=(0.009, 0.001)).validate()
    with pytest.raises(ConfigurationError, match="start_jitter"):
        RoundConfig(4, start_jitter=(-1.0, 0.0)).validate()
    with pytest.raises(ConfigurationError, match="does not fit"):
        RoundConfig(4, start_jitter=(0.0, 50.0)).validate()
