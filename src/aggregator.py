#!/usr/bin/env python3
"""
aggregator.py

The aggregator (lead meter) side of the obfuscation protocol.

Two peer aggregators A and B share a channel: the ordered list of all members
assigned to either of them. In the exchange phase each draws a mask vector with
one entry per channel member and sends it to the other (A sends mask_AB, B sends
mask_BA). Both then compute the same combined mask

    combined[i] = mask_AB[i] + mask_BA[i]

and each sends combined[i] as the offset of every member i it is responsible
for. Members report reading + offset. The aggregator subtracts the offsets of
the members that reported to obtain the group sum.

A party that holds only its own half of a combined mask cannot pin down a
reading: every value the peer half could take explains the observed report with
a different reading (see feasible_readings()).

A single gateway has no peer. It draws both vectors of the combined mask
itself, so it holds every offset it hands out.
"""

import wire_codec
from errors import FormatError, RangeError
from utils import get_logger

logger = get_logger(__name__)


def combine_masks(mask_ab, mask_ba):
    """Elementwise sum of two peer mask vectors of equal length."""
    if len(mask_ab) != len(mask_ba):
        raise ValueError(f"Mask vectors differ in length: {len(mask_ab)} != {len(mask_ba)}")
    return tuple(a + b for a, b in zip(mask_ab, mask_ba))


def blind(readings, offsets):
    """Elementwise reading + offset."""
    if len(readings) != len(offsets):
        raise ValueError(f"{len(readings)} readings but {len(offsets)} offsets")
    return [r + o for r, o in zip(readings, offsets)]


def feasible_readings(observed, own_half, peer_range):
    """
    Readings consistent with an observed blinded value when only one half of
    the combined mask is known. Maps every possible peer mask value to the
    reading it implies; no two peer values imply the same reading.
    """
    return {p: observed - own_half - p for p in peer_range.values()}


class Channel:
    """
    Two peer aggregators and the ordered members assigned to either of them,
    or a single gateway and its members.
    """

    def __init__(self, peers, members):
        self.peers = tuple(peers)
        self.members = tuple(sorted(members))
        self._index = {m: i for i, m in enumerate(self.members)}

    def index_of(self, member_id):
        return self._index[member_id]

    @property
    def single_gateway(self):
        return len(self.peers) == 1

    def peer_of(self, aggregator_id):
        """The other aggregator of the pair; None for a single gateway."""
        if aggregator_id not in self.peers:
            raise KeyError(aggregator_id)
        if self.single_gateway:
            return None
        a, b = self.peers
        return b if aggregator_id == a else a

    def __len__(self):
        return len(self.members)

    def __repr__(self):
        return f"Channel({'<->'.join(repr(p) for p in self.peers)}, {len(self.members)} members)"


class MaskedVector:
    """
    An issued mask vector. Immutable; the length is the channel size.
    """

    def __init__(self, values, owner, round_id, peer):
        self.values = tuple(int(v) for v in values)
        self.owner = owner
        self.round_id = round_id
        self.peer = peer

    def __len__(self):
        return len(self.values)

    def __getitem__(self, index):
        return self.values[index]

    def __iter__(self):
        return iter(self.values)

    def __repr__(self):
        return f"MaskedVector(owner={self.owner!r}, round={self.round_id}, peer={self.peer!r}, n={len(self)})"


class AggregatorOutcome:
    """What one aggregator learned in one round."""

    def __init__(self, aggregator_id, round_id, assigned, reports, offsets):
        self.aggregator_id = aggregator_id
        self.round_id = round_id
        self.assigned = list(assigned)
        self.collected = sorted(reports)
        self.blinded_total = sum(reports.values())
        self.unmasked_total = self.blinded_total - sum(offsets.get(m, 0) for m in reports)

    @property
    def expected(self):
        return len(self.assigned)

    @property
    def completeness(self):
        return len(self.collected) / self.expected if self.expected else 1.0

    @property
    def missing(self):
        return sorted(set(self.assigned) - set(self.collected))

    def __repr__(self):
        return (f"AggregatorOutcome({self.aggregator_id!r}, round={self.round_id}, "
                f"{len(self.collected)}/{self.expected}, sum={self.unmasked_total})")


class Aggregator:
    """
    A lead meter responsible for a disjoint subset of members.
    """

    def __init__(self, aggregator_id, members, transport, generator, exchange_range, report_range):
        """
        Parameters:
          aggregator_id  -- This aggregator's id.
          members        -- Member ids the partition assigns to this aggregator.
          transport      -- Transport used for sending and receiving.
          generator      -- Session owned MaskGenerator.
          exchange_range -- ValueRange of each peer-exchange mask entry.
          report_range   -- ValueRange of an acceptable blinded report.
        """
        self.id = aggregator_id
        self.members = sorted(members)
        self.transport = transport
        self.generator = generator
        self.exchange_range = exchange_range
        self.report_range = report_range

        self.round_id = None
        self.channel = None
        self.peer_id = None
        self.own_half = None
        self.peer_half = None
        self.combined = None
        self.offsets = {}
        self.pending_offsets = {}
        self.reports = {}
        self.exchange_open = False
        self.collecting = False
        self.exchange_incomplete = False
        self._issued = set()

        self.sent = 0
        self.received = 0
        self.format_errors = 0
        self.range_errors = 0
        self.late = 0

        transport.register(self.id, self.on_receive)

    def begin_round(self, round_id, channel):
        self.round_id = round_id
        self.channel = channel
        self.peer_id = channel.peer_of(self.id)
        self.own_half = None
        self.peer_half = None
        self.combined = None
        self.offsets = {}
        self.reports = {}
        self.exchange_open = False
        self.collecting = False
        self.exchange_incomplete = False
        # Keys of earlier rounds can never repeat.
        self._issued = {key for key in self._issued if key[0] == round_id}

    def _draw_half(self, peer):
        key = (self.round_id, peer)
        if key in self._issued:
            raise RuntimeError(f"Aggregator {self.id!r} already drew masks for round {self.round_id}, peer {peer!r}")
        self._issued.add(key)
        values = self.generator.draw_vector_in(len(self.channel), self.exchange_range)
        return MaskedVector(values, self.id, self.round_id, peer)

    def open_exchange(self):
        """Accept the peer's masks from the start of the phase, even before sending our own."""
        self.exchange_open = True

    def start_exchange(self):
        """
        Draw this side's mask vector for the channel and send it to the peer.
        A single gateway has no peer: it draws both vectors itself and sends
        nothing.
        """
        self.pending_offsets = {}
        if self.peer_id is None:
            self.own_half = self._draw_half(None)
            self.peer_half = self._draw_half(self.id)
            self.combined = combine_masks(self.own_half, self.peer_half)
            self.exchange_open = True
            return
        self.own_half = self._draw_half(self.peer_id)
        self.exchange_open = True
        self._send(self.peer_id, list(self.own_half))
        logger.debug("Aggregator %s sent %d masks to %s", self.id, len(self.own_half), self.peer_id)
        if self.peer_half is not None:
            self.combined = combine_masks(self.own_half, self.peer_half)

    def close_exchange(self):
        self.exchange_open = False
        if self.combined is None:
            self.exchange_incomplete = True
            logger.warning("Aggregator %s round %s: no masks from peer %s before the deadline",
                           self.id, self.round_id, self.peer_id)

    def distribute(self):
        """Send combined[i] to every assigned member i."""
        if self.combined is None:
            self.exchange_incomplete = True
            logger.warning("Aggregator %s round %s: combined mask unavailable, nothing distributed",
                           self.id, self.round_id)
            return
        for member_id in self.members:
            offset = self.combined[self.channel.index_of(member_id)]
            self.offsets[member_id] = offset
            self._send(member_id, [offset])

    def distribute_local(self):
        """
        Distribute-only rounds skip the peer exchange: each member's offset is
        this aggregator's own draw. The offsets are kept for the next
        collect-only round.
        """
        self.own_half = self._draw_half(None)
        self.pending_offsets = {}
        for member_id in self.members:
            offset = self.own_half[self.channel.index_of(member_id)]
            self.pending_offsets[member_id] = offset
            self._send(member_id, [offset])

    def open_collection(self, use_pending=False):
        if use_pending:
            self.offsets, self.pending_offsets = self.pending_offsets, {}
        self.collecting = True

    def close_collection(self):
        self.collecting = False
        outcome = AggregatorOutcome(self.id, self.round_id, self.members, self.reports, self.offsets)
        if outcome.missing:
            logger.warning("Aggregator %s round %s: %d of %d members reported, missing %s",
                           self.id, self.round_id, len(outcome.collected), outcome.expected, outcome.missing)
        return outcome

    def view(self, member_id):
        """(observed report, own mask half) for one member: all this side holds alone."""
        return self.reports.get(member_id), self.own_half[self.channel.index_of(member_id)]

    def on_receive(self, payload, source):
        self.received += 1
        if source == self.peer_id:
            self._handle_peer_masks(payload)
        elif source in self.members:
            self._handle_report(payload, source)
        else:
            self.late += 1
            logger.debug("Aggregator %s ignored message from %r", self.id, source)

    def _handle_peer_masks(self, payload):
        if not self.exchange_open or self.peer_half is not None:
            self.late += 1
            return
        try:
            values = wire_codec.decode(payload)
            if len(values) != len(self.channel):
                raise FormatError(f"expected {len(self.channel)} masks, got {len(values)}")
        except FormatError as e:
            self.format_errors += 1
            logger.warning("Aggregator %s discarded masks from %s: %s", self.id, self.peer_id, e)
            return
        try:
            for v in values:
                self.exchange_range.check(v, "mask")
        except RangeError as e:
            self.range_errors += 1
            logger.warning("Aggregator %s discarded masks from %s: %s", self.id, self.peer_id, e)
            return
        self.peer_half = MaskedVector(values, self.peer_id, self.round_id, self.id)
        if self.own_half is not None:
            self.combined = combine_masks(self.own_half, self.peer_half)

    def _handle_report(self, payload, member_id):
        if not self.collecting or member_id in self.reports:
            self.late += 1
            return
        try:
            values = wire_codec.decode(payload)
            if len(values) != 1:
                raise FormatError(f"expected one report value, got {len(values)}")
        except FormatError as e:
            self.format_errors += 1
            logger.warning("Aggregator %s discarded report from member %s: %s", self.id, member_id, e)
            return
        try:
            self.reports[member_id] = self.report_range.check(values[0], "report")
        except RangeError as e:
            self.range_errors += 1
            logger.warning("Aggregator %s dropped report from member %s: %s", self.id, member_id, e)

    def _send(self, destination, values):
        self.transport.send(self.id, destination, wire_codec.encode_bytes(values))
        self.sent += 1

    def end_round(self):
        self.exchange_open = False
        self.collecting = False

    def counters(self):
        return {
            "role": "aggregator",
            "node": self.id,
            "round_id": self.round_id,
            "sent": self.sent,
            "received": self.received,
            "format_errors": self.format_errors,
            "range_errors": self.range_errors,
            "late": self.late,
        }

    def __repr__(self):
        return f"Aggregator({self.id!r}, {len(self.members)} members)"
