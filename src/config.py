#!/usr/bin/env python3
"""
config.py

Round configuration for the obfuscation protocol: value ranges for readings and
masks, per-phase timing, the session type and the Partition that assigns every
member meter to exactly one aggregator (lead meter).

All phase times are measured in seconds of virtual time from the start of the
round. Round r starts at r * round_period.
"""

import pandas as pd

from errors import ConfigurationError, RangeError

EXCHANGE = "exchange"
DISTRIBUTE = "distribute"
COLLECT = "collect"


class SessionType:
    """Phase orderings a round can run with."""
    BIDIRECTIONAL = "bidirectional"
    DISTRIBUTE_ONLY = "distribute_only"
    COLLECT_ONLY = "collect_only"

    ALL = (BIDIRECTIONAL, DISTRIBUTE_ONLY, COLLECT_ONLY)

    PHASES = {
        BIDIRECTIONAL: (EXCHANGE, DISTRIBUTE, COLLECT),
        DISTRIBUTE_ONLY: (DISTRIBUTE,),
        COLLECT_ONLY: (COLLECT,),
    }

    @classmethod
    def from_type_op(cls, type_op):
        """Map the numeric operation type (1, 2, 3) used on the command line."""
        try:
            return {1: cls.BIDIRECTIONAL, 2: cls.DISTRIBUTE_ONLY, 3: cls.COLLECT_ONLY}[int(type_op)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"Unknown operation type {type_op!r}; expected 1, 2 or 3") from None


class ValueRange:
    """
    A bounded integer range. The low end is always inclusive; the high end is
    inclusive only if `inclusive` is set.
    """

    def __init__(self, low, high, inclusive=True):
        if high < low or (not inclusive and high == low):
            raise ConfigurationError(f"Empty range [{low}, {high}{']' if inclusive else ')'}")
        self.low = int(low)
        self.high = int(high)
        self.inclusive = inclusive

    @property
    def max_value(self):
        return self.high if self.inclusive else self.high - 1

    def contains(self, value):
        return self.low <= value <= self.max_value

    def check(self, value, what="value"):
        """Return value, or raise RangeError if it lies outside the range."""
        if not self.contains(value):
            raise RangeError(what, value, self.low, self.max_value)
        return value

    def values(self):
        return range(self.low, self.max_value + 1)

    def scaled(self, k):
        """The range of a sum of k independent draws from this range."""
        return ValueRange(k * self.low, k * self.max_value, inclusive=True)

    def shifted(self, other):
        """The range of x + y for x in self and y in other."""
        return ValueRange(self.low + other.low, self.max_value + other.max_value, inclusive=True)

    def __len__(self):
        return self.max_value - self.low + 1

    def __eq__(self, other):
        return (isinstance(other, ValueRange)
                and (self.low, self.max_value) == (other.low, other.max_value))

    def __repr__(self):
        return f"ValueRange({self.low}, {self.high}{']' if self.inclusive else ')'})"


class PhaseTiming:
    """Start offset and stop deadline of one phase, both relative to the round start."""

    def __init__(self, start, stop):
        self.start = float(start)
        self.stop = float(stop)

    def __repr__(self):
        return f"PhaseTiming(start={self.start}, stop={self.stop})"


class Partition:
    """
    Total, disjoint mapping from member id to aggregator id.
    """

    def __init__(self, assignments):
        """
        Parameters:
          assignments: a dict {member_id: aggregator_id}, or an iterable of
                       (member_id, aggregator_id) pairs. A member listed twice
                       with different aggregators is a configuration error.
        """
        self.assignment = {}
        items = assignments.items() if isinstance(assignments, dict) else assignments
        for member_id, aggregator_id in items:
            member_id = int(member_id)
            previous = self.assignment.get(member_id)
            if previous is not None and previous != aggregator_id:
                raise ConfigurationError(
                    f"Member {member_id} assigned to both {previous!r} and {aggregator_id!r}")
            self.assignment[member_id] = aggregator_id

    @classmethod
    def odd_even(cls, n, even_aggregator="lead0", odd_aggregator="lead1"):
        """Even member ids report to one lead meter and odd ids to the other."""
        return cls({i: (even_aggregator if i % 2 == 0 else odd_aggregator) for i in range(n)})

    def aggregator_of(self, member_id):
        return self.assignment[member_id]

    def members_of(self, aggregator_id):
        return sorted(m for m, a in self.assignment.items() if a == aggregator_id)

    def aggregators(self):
        return sorted(set(self.assignment.values()), key=str)

    def validate(self, member_ids):
        """Raise ConfigurationError unless every member in member_ids is covered exactly once."""
        expected = set(member_ids)
        assigned = set(self.assignment)
        missing = sorted(expected - assigned)
        unknown = sorted(assigned - expected)
        if missing:
            raise ConfigurationError(f"Members missing from partition: {missing}")
        if unknown:
            raise ConfigurationError(f"Partition names unknown members: {unknown}")

    def __len__(self):
        return len(self.assignment)

    def __repr__(self):
        return f"Partition({len(self.assignment)} members -> {self.aggregators()})"


def load_partition_csv(path):
    """Read a partition from a CSV file with member_id and aggregator_id columns."""
    df = pd.read_csv(path, dtype={"aggregator_id": str})
    for column in ("member_id", "aggregator_id"):
        if column not in df.columns:
            raise ConfigurationError(f"Partition file {path} has no '{column}' column")
    return Partition(zip(df["member_id"].astype(int), df["aggregator_id"]))


def default_phases():
    return {
        EXCHANGE: PhaseTiming(5.0, 40.0),
        DISTRIBUTE: PhaseTiming(45.0, 80.0),
        COLLECT: PhaseTiming(85.0, 130.0),
    }


class RoundConfig:
    """
    Everything a Session needs to run rounds.

    In the paired layout every aggregator exchanges masks with one peer. In the
    single-gateway layout each aggregator (gateway) serves its members alone
    and draws both mask vectors of the combined offset itself.
    """

    def __init__(self, member_count, partition=None, phases=None,
                 exchange_range=None, remask_range=None, remask_enabled=False,
                 reading_range=None, session_type=SessionType.BIDIRECTIONAL,
                 round_period=150.0, send_interval=0.5, pairs=None,
                 single_gateway=False, start_jitter=None):
        """
        Parameters:
          member_count   -- Number of member meters; member ids are 0 .. member_count-1.
          partition      -- Partition of members to aggregators (odd/even split if None,
                            or every member to "gateway" in the single-gateway layout).
          phases         -- Dict phase name -> PhaseTiming (default_phases() if None).
          exchange_range -- Range of the peer-exchange masks (default [-20, 20]).
          remask_range   -- Range of the second-stage re-mask (default [50, 100)).
          remask_enabled -- Whether members add a re-mask after blinding.
          reading_range  -- Accepted meter readings (default [0, 100000]).
          session_type   -- Default session type for rounds.
          round_period   -- Virtual seconds between round starts.
          send_interval  -- Largest spacing between consecutive member reports on a channel.
          pairs          -- List of (aggregator, aggregator) peer pairs; if None the
                            aggregators are paired in sorted order.
          single_gateway -- Every aggregator works without a peer.
          start_jitter   -- Optional (low, high) seconds; a uniform draw from it delays
                            every phase start and report send.
        """
        self.member_count = member_count
        self.single_gateway = single_gateway
        if partition is None:
            partition = Partition({i: "gateway" for i in range(member_count)}) if single_gateway \
                else Partition.odd_even(member_count)
        self.partition = partition
        self.phases = phases if phases is not None else default_phases()
        self.exchange_range = exchange_range or ValueRange(-20, 20, inclusive=True)
        self.remask_range = remask_range or ValueRange(50, 100, inclusive=False)
        self.remask_enabled = remask_enabled
        self.reading_range = reading_range or ValueRange(0, 100000, inclusive=True)
        self.session_type = session_type
        self.round_period = float(round_period)
        self.send_interval = float(send_interval)
        self.start_jitter = tuple(float(v) for v in start_jitter) if start_jitter is not None else None
        self._pairs = pairs

    @property
    def member_ids(self):
        return list(range(self.member_count))

    @property
    def offset_range(self):
        """Range of a combined mask: the sum of two exchange draws."""
        return self.exchange_range.scaled(2)

    @property
    def report_range(self):
        """Range of a blinded value an aggregator may accept."""
        r = self.reading_range.shifted(self.offset_range)
        if self.remask_enabled:
            r = r.shifted(self.remask_range)
        return r

    @property
    def max_jitter(self):
        return self.start_jitter[1] if self.start_jitter is not None else 0.0

    def pairs(self):
        if self._pairs is not None:
            return [tuple(p) for p in self._pairs]
        aggregators = self.partition.aggregators()
        if self.single_gateway:
            return [(a,) for a in aggregators]
        return [tuple(aggregators[i:i + 2]) for i in range(0, len(aggregators), 2)]

    def report_spacing(self, channel_size):
        """
        Spacing between report sends on a channel of channel_size members.
        send_interval is shortened so the last send (plus jitter) still lies
        inside the collection window.
        """
        if channel_size <= 1:
            return self.send_interval
        timing = self.phases[COLLECT]
        window = timing.stop - timing.start - self.max_jitter
        return min(self.send_interval, window / channel_size)

    def validate(self, session_types=None):
        """
        Check the configuration before any network action. Raises ConfigurationError.
        """
        if self.member_count < 0:
            raise ConfigurationError("member_count must be non-negative")
        self.partition.validate(self.member_ids)

        aggregators = set(self.partition.aggregators())
        group_size = 1 if self.single_gateway else 2
        paired = []
        for pair in self.pairs():
            if len(pair) != group_size or len(set(pair)) != len(pair):
                raise ConfigurationError(f"Invalid aggregator pair {pair!r}")
            paired.extend(pair)
        duplicates = sorted({a for a in paired if paired.count(a) > 1}, key=str)
        if duplicates:
            raise ConfigurationError(f"Aggregators in more than one pair: {duplicates}")
        unpaired = sorted(aggregators - set(paired), key=str)
        if unpaired:
            raise ConfigurationError(f"Aggregators without a peer: {unpaired}")
        clash = (aggregators | set(paired)) & set(self.member_ids)
        if clash:
            raise ConfigurationError(f"Aggregator ids collide with member ids: {sorted(clash, key=str)}")

        if self.start_jitter is not None:
            low, high = self.start_jitter
            if low < 0 or high < low:
                raise ConfigurationError(f"start_jitter must satisfy 0 <= low <= high, got {self.start_jitter}")

        if session_types is None:
            session_types = [self.session_type]
        needed = set()
        for session_type in session_types:
            if session_type not in SessionType.ALL:
                raise ConfigurationError(f"Unknown session type {session_type!r}")
            needed.update(SessionType.PHASES[session_type])
        for phase in sorted(needed):
            timing = self.phases.get(phase)
            if timing is None:
                raise ConfigurationError(f"Missing timing for phase '{phase}'")
            if timing.start < 0 or timing.stop <= timing.start:
                raise ConfigurationError(f"Phase '{phase}' must satisfy 0 <= start < stop, got {timing}")
            if timing.stop > self.round_period:
                raise ConfigurationError(
                    f"Phase '{phase}' deadline {timing.stop} exceeds round period {self.round_period}")
            if timing.start + self.max_jitter >= timing.stop:
                raise ConfigurationError(f"start_jitter {self.start_jitter} does not fit phase '{phase}'")
        if self.send_interval < 0:
            raise ConfigurationError("send_interval must be non-negative")
