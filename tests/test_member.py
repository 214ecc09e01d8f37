"""
Tests for the member (leaf meter) role.
Run: pytest tests/test_member.py -q
"""
import pytest

import wire_codec
from config import ValueRange
from member import Member, MemberState


@pytest.fixture
def member(transport, generator, reading_range, offset_range):
    return Member(0, "lead0", transport, generator, reading_range, offset_range)


def deliver(transport, scheduler, source, destination, values):
    transport.send(source, destination, wire_codec.encode_bytes(values))
    scheduler.run()


def test_blinds_reading_with_offset_and_reports(member, transport, scheduler, inbox):
    reports = inbox("lead0")
    member.begin_round(0, 100)
    assert member.state == MemberState.AWAITING_OFFSET
    deliver(transport, scheduler, "lead0", 0, [20])
    assert member.state == MemberState.BLINDED
    assert member.blinded == 120

    member.send_report()
    scheduler.run()
    assert [payload for _, _, payload in reports] == [b"1$120*"]
    assert member.state == MemberState.SENT
    assert member.counters()["sent"] == 1


def test_offset_from_other_node_ignored(member, transport, scheduler):
    member.begin_round(0, 100)
    deliver(transport, scheduler, "lead1", 0, [20])
    assert member.state == MemberState.AWAITING_OFFSET
    assert member.late == 1


def test_malformed_offset_discarded(member, transport, scheduler):
    member.begin_round(0, 100)
    transport.send("lead0", 0, b"2$20*")
    scheduler.run()
    assert member.format_errors == 1
    assert member.state == MemberState.AWAITING_OFFSET


def test_offset_vector_with_two_values_discarded(member, transport, scheduler):
    member.begin_round(0, 100)
    deliver(transport, scheduler, "lead0", 0, [1, 2])
    assert member.format_errors == 1


def test_offset_out_of_range_discarded(member, transport, scheduler):
    member.begin_round(0, 100)
    deliver(transport, scheduler, "lead0", 0, [41])
    assert member.range_errors == 1
    assert member.state == MemberState.AWAITING_OFFSET


def test_reading_out_of_range_fails_round(member, transport, scheduler, inbox):
    reports = inbox("lead0")
    member.begin_round(0, -5)
    assert member.failed
    deliver(transport, scheduler, "lead0", 0, [20])
    member.send_report()
    scheduler.run()
    assert reports == []


def test_missed_deadline(member, transport, scheduler, inbox):
    reports = inbox("lead0")
    member.begin_round(0, 100)
    member.offset_deadline_passed()
    assert member.missed
    deliver(transport, scheduler, "lead0", 0, [20])
    assert member.late == 1
    member.send_report()
    scheduler.run()
    assert reports == []


def test_remask_adds_bounded_noise(transport, generator, reading_range, offset_range, scheduler):
    member = Member(1, "lead1", transport, generator, reading_range, offset_range,
                    remask_range=ValueRange(50, 100, inclusive=False))
    member.begin_round(0, 1000)
    deliver(transport, scheduler, "lead1", 1, [-7])
    noise = member.blinded - 1000 + 7
    assert 50 <= noise <= 99


def test_held_offset_used_in_next_round(member, transport, scheduler):
    member.begin_offset_round(0)
    deliver(transport, scheduler, "lead0", 0, [7])
    assert member.has_pending_offset
    assert member.state == MemberState.IDLE
    member.end_round()

    member.begin_round(1, 10, use_pending=True)
    assert member.state == MemberState.BLINDED
    assert member.blinded == 17
    assert not member.has_pending_offset


def test_stale_held_offset_discarded(member, transport, scheduler):
    member.begin_offset_round(0)
    deliver(transport, scheduler, "lead0", 0, [7])
    member.end_round()
    member.begin_round(1, 10)
    assert not member.has_pending_offset
    assert member.state == MemberState.AWAITING_OFFSET


def test_unsent_report_is_missed_at_collection_deadline(member, transport, scheduler, inbox):
    reports = inbox("lead0")
    member.begin_round(0, 100)
    deliver(transport, scheduler, "lead0", 0, [20])
    member.collection_deadline_passed()
    assert member.missed
    member.send_report()
    scheduler.run()
    assert reports == []


def test_sent_report_is_not_missed(member, transport, scheduler):
    member.begin_round(0, 100)
    deliver(transport, scheduler, "lead0", 0, [20])
    member.send_report()
    member.collection_deadline_passed()
    assert not member.missed
    assert member.state == MemberState.SENT
