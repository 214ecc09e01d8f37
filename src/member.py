#!/usr/bin/env python3
"""
member.py

The member (smart meter) side of the obfuscation protocol.

A member holds one true reading per round. It waits for the offset sent by its
assigned aggregator, adds the offset (and, if enabled, a fresh re-mask drawn
from the larger range) to the reading, and reports the blinded value upstream
at its scheduled send time. A member whose offset does not arrive before the
distribution deadline contributes nothing to the round.
"""

import wire_codec
from errors import FormatError, RangeError
from utils import get_logger

logger = get_logger(__name__)


class MemberState:
    IDLE = "idle"
    AWAITING_OFFSET = "awaiting_offset"
    BLINDED = "blinded"
    SENT = "sent"


class Member:
    """
    A leaf meter. All interaction with aggregators goes through the transport.
    """

    def __init__(self, member_id, aggregator_id, transport, generator,
                 reading_range, offset_range, remask_range=None):
        """
        Parameters:
          member_id     -- This meter's id.
          aggregator_id -- Id of the aggregator the partition assigns this meter to.
          transport     -- Transport used for sending and receiving.
          generator     -- Session owned MaskGenerator used for re-masking.
          reading_range -- ValueRange a reading must lie in.
          offset_range  -- ValueRange an offset from the aggregator must lie in.
          remask_range  -- ValueRange of the second blinding stage, or None to disable it.
        """
        self.id = member_id
        self.aggregator_id = aggregator_id
        self.transport = transport
        self.generator = generator
        self.reading_range = reading_range
        self.offset_range = offset_range
        self.remask_range = remask_range

        self.state = MemberState.IDLE
        self.round_id = None
        self.reading = None
        self.blinded = None
        self.missed = False
        self.failed = False
        self.hold_offsets = False
        self.pending_offset = None

        self.sent = 0
        self.received = 0
        self.format_errors = 0
        self.range_errors = 0
        self.late = 0

        transport.register(self.id, self.on_receive)

    def begin_round(self, round_id, reading, use_pending=False):
        """
        Capture this round's reading and start waiting for an offset. With
        use_pending (collect-only rounds) the offset held from the last
        distribute-only round is consumed instead of waiting for a new one.
        """
        self.round_id = round_id
        self.blinded = None
        self.missed = False
        self.failed = False
        self.hold_offsets = False
        pending, self.pending_offset = self.pending_offset, None
        try:
            self.reading_range.check(reading, "reading")
        except RangeError as e:
            self.range_errors += 1
            self.failed = True
            self.reading = None
            self.state = MemberState.IDLE
            logger.warning("Member %s round %s: %s; no contribution", self.id, round_id, e)
            return
        self.reading = int(reading)
        self.state = MemberState.AWAITING_OFFSET
        if use_pending and pending is not None:
            self._apply_offset(pending)

    def begin_offset_round(self, round_id):
        """Distribute-only round: receive an offset and keep it for a later collect-only round."""
        self.round_id = round_id
        self.reading = None
        self.blinded = None
        self.missed = False
        self.failed = False
        self.hold_offsets = True
        self.pending_offset = None
        self.state = MemberState.AWAITING_OFFSET

    def on_receive(self, payload, source):
        self.received += 1
        if source != self.aggregator_id:
            self.late += 1
            logger.debug("Member %s ignored message from %r", self.id, source)
            return
        try:
            values = wire_codec.decode(payload)
        except FormatError as e:
            self.format_errors += 1
            logger.warning("Member %s discarded malformed offset from %r: %s", self.id, source, e)
            return
        if len(values) != 1:
            self.format_errors += 1
            logger.warning("Member %s expected one offset, got %d values", self.id, len(values))
            return
        try:
            offset = self.offset_range.check(values[0], "offset")
        except RangeError as e:
            self.range_errors += 1
            logger.warning("Member %s: %s", self.id, e)
            return
        if self.state != MemberState.AWAITING_OFFSET:
            self.late += 1
            logger.debug("Member %s got an offset in state %s", self.id, self.state)
            return
        if self.hold_offsets:
            self.pending_offset = offset
            self.state = MemberState.IDLE
            logger.debug("Member %s holding offset for a later round", self.id)
            return
        self._apply_offset(offset)

    def _apply_offset(self, offset):
        blinded = self.reading + offset
        if self.remask_range is not None:
            blinded += self.generator.draw_in(self.remask_range)
        self.blinded = blinded
        self.state = MemberState.BLINDED

    def offset_deadline_passed(self):
        """No retry: a member still waiting simply misses this round."""
        if self.state != MemberState.AWAITING_OFFSET:
            return
        self.missed = True
        self.state = MemberState.IDLE
        logger.warning("Member %s missed its offset in round %s", self.id, self.round_id)

    def collection_deadline_passed(self):
        """A blinded value that was never sent by the collection deadline is a miss."""
        if self.state != MemberState.BLINDED:
            return
        self.missed = True
        self.state = MemberState.IDLE
        logger.warning("Member %s did not report before the collection deadline of round %s",
                       self.id, self.round_id)

    def send_report(self):
        if self.state != MemberState.BLINDED:
            return
        self.transport.send(self.id, self.aggregator_id, wire_codec.encode_bytes([self.blinded]))
        self.sent += 1
        self.state = MemberState.SENT

    def end_round(self):
        self.reading = None
        self.blinded = None
        self.hold_offsets = False
        self.state = MemberState.IDLE

    @property
    def has_pending_offset(self):
        return self.pending_offset is not None

    def counters(self):
        return {
            "role": "member",
            "node": self.id,
            "round_id": self.round_id,
            "sent": self.sent,
            "received": self.received,
            "format_errors": self.format_errors,
            "range_errors": self.range_errors,
            "late": self.late,
        }

    def __repr__(self):
        return f"Member({self.id}, aggregator={self.aggregator_id!r}, state={self.state})"
