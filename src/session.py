#!/usr/bin/env python3
"""
session.py

Sequences the phases of the obfuscation protocol in virtual time.

A Session owns the scheduler, the random stream, the transport and every
member and aggregator role. Each round is scheduled as a set of phase-entry
actions at fixed offsets from the round start:

  bidirectional:   exchange -> distribute -> collect
  distribute_only: distribute (offsets are held for a later collect_only round)
  collect_only:    collect (members use the offset held from distribute_only)

Waiting for a message is never blocking: the phase deadline actions decide
what arrived in time. Missed deadlines are not retried; they show up in the
round's completeness.

Reports on a channel are spaced by RoundConfig.report_spacing() so that every
send lies inside the collection window. With start_jitter set, phase starts and
report sends are delayed by a random draw; deadlines never move.
"""

from config import EXCHANGE, DISTRIBUTE, COLLECT, SessionType
from errors import ConfigurationError
from mask_generator import MaskGenerator
from member import Member
from aggregator import Aggregator, Channel
from reporting import RoundReporter
from scheduler import Scheduler
from transport import SimulatedTransport
from utils import get_logger

logger = get_logger(__name__)

SESSION_OWNER = "session"


class RoundResult:
    """Outcome of one round."""

    def __init__(self, round_id, session_type, start_time, end_time, expected, contributed,
                 outcomes=None, missed=None, failed=None, counters=None, true_sums=None):
        self.round_id = round_id
        self.session_type = session_type
        self.start_time = start_time
        self.end_time = end_time
        self.expected = expected
        self.contributed = sorted(contributed)
        self.outcomes = outcomes or {}
        self.missed = sorted(missed or [])
        self.failed = sorted(failed or [])
        self.counters = counters or []
        # Sum of the true readings behind each aggregator's collected reports.
        # Only the simulation knows these; no role ever sees them.
        self.true_sums = true_sums or {}

    @property
    def collected(self):
        return len(self.contributed)

    @property
    def completeness(self):
        return self.collected / self.expected if self.expected else 1.0

    @property
    def group_sums(self):
        return {agg: outcome.unmasked_total for agg, outcome in self.outcomes.items()}

    def __repr__(self):
        return (f"RoundResult(round={self.round_id}, type={self.session_type}, "
                f"{self.collected}/{self.expected} = {100.0 * self.completeness:.1f}%)")


class Session:
    """
    One protocol instance: roles, transport, scheduler and a random stream seeded once.
    """

    def __init__(self, config, seed=None, reporter=None, network=None,
                 delay_range=(0.001, 0.01), drop_rate=0.0, drop_filter=None):
        """
        Parameters:
          config      -- RoundConfig; validated here, before anything is scheduled or sent.
          seed        -- Seed of the session's random stream.
          reporter    -- Reporting collaborator (a RoundReporter is created if None).
          network     -- Optional MeterNetwork giving hop counts for transport delays.
          delay_range -- Per-packet (or per-hop) delay range of the transport.
          drop_rate   -- Packet loss probability of the transport.
          drop_filter -- Optional predicate (source, destination, payload) -> drop.
        """
        config.validate()
        self.config = config
        self.seed = seed
        self.scheduler = Scheduler()
        self.generator = MaskGenerator(seed)
        self.transport = SimulatedTransport(self.scheduler, self.generator.spawn(),
                                            delay_range=delay_range, drop_rate=drop_rate,
                                            network=network, drop_filter=drop_filter)
        # Spawned only when used so that runs without jitter keep their streams.
        self.jitter = self.generator.spawn() if config.start_jitter is not None else None
        self.reporter = reporter if reporter is not None else RoundReporter()
        self.next_round = 0
        self.results = []
        self._pending_result = None
        self._outcomes = {}

        partition = config.partition
        self.channels = []
        self.aggregators = {}
        for group in config.pairs():
            channel = Channel(group, [m for agg_id in group for m in partition.members_of(agg_id)])
            self.channels.append(channel)
            for agg_id in group:
                self.aggregators[agg_id] = Aggregator(
                    agg_id, partition.members_of(agg_id), self.transport, self.generator,
                    config.exchange_range, config.report_range)
        self.channel_of = {agg_id: ch for ch in self.channels for agg_id in ch.peers}

        remask = config.remask_range if config.remask_enabled else None
        self.members = {}
        for member_id in config.member_ids:
            self.members[member_id] = Member(
                member_id, partition.aggregator_of(member_id), self.transport, self.generator,
                config.reading_range, config.offset_range, remask)

        roles = {m: "member" for m in self.members}
        roles.update({a: "aggregator" for a in self.aggregators})
        self.reporter.register_roles(roles)
        self.transport.add_listener(self.reporter.on_transport_event)
        logger.info("Session with %d members, %d aggregators, %d channels (seed=%s)",
                    len(self.members), len(self.aggregators), len(self.channels), seed)

    def _readings_for(self, readings):
        if readings is None:
            raise ConfigurationError("Readings are required for rounds with a collect phase")
        if isinstance(readings, dict):
            lookup = readings
        else:
            readings = list(readings)
            if len(readings) != len(self.members):
                raise ConfigurationError(f"Expected {len(self.members)} readings, got {len(readings)}")
            lookup = dict(enumerate(readings))
        missing = sorted(set(self.members) - set(lookup))
        if missing:
            raise ConfigurationError(f"No reading for members {missing}")
        return lookup

    def _at(self, time, action, owner=SESSION_OWNER, label=None):
        return self.scheduler.schedule_at(time, action, owner=owner, label=label)

    def run_round(self, readings=None, session_type=None):
        """
        Schedule and run one round. Returns its RoundResult.
        """
        session_type = session_type or self.config.session_type
        self.config.validate([session_type])
        phases = self.config.phases
        phase_names = SessionType.PHASES[session_type]
        lookup = self._readings_for(readings) if COLLECT in phase_names else None

        round_id = self.next_round
        self.next_round += 1
        t0 = max(round_id * self.config.round_period, self.scheduler.now)
        t_end = t0 + max(phases[p].stop for p in phase_names)

        def begin():
            self.reporter.round_started(round_id, session_type, self.scheduler.now)
            for agg_id, aggregator in self.aggregators.items():
                aggregator.begin_round(round_id, self.channel_of[agg_id])
            for member_id, member in self.members.items():
                if session_type == SessionType.DISTRIBUTE_ONLY:
                    member.begin_offset_round(round_id)
                else:
                    member.begin_round(round_id, lookup[member_id],
                                       use_pending=(session_type == SessionType.COLLECT_ONLY))

        self._at(t0, begin, label="begin")
        if EXCHANGE in phase_names:
            self._schedule_exchange(t0, phases[EXCHANGE])
        if DISTRIBUTE in phase_names:
            self._schedule_distribution(t0, phases[DISTRIBUTE], session_type)
        if COLLECT in phase_names:
            self._schedule_collection(t0, phases[COLLECT], session_type)
        self._at(t_end, lambda: self._finish(round_id, session_type, t0), label="finish")

        self.scheduler.run(until=t_end)
        result, self._pending_result = self._pending_result, None
        return result

    def _delay(self):
        """Random start jitter for one action, 0.0 when jitter is off."""
        if self.jitter is None:
            return 0.0
        return self.jitter.uniform(*self.config.start_jitter)

    def _schedule_exchange(self, t0, timing):
        for agg_id, aggregator in self.aggregators.items():
            self._at(t0 + timing.start, aggregator.open_exchange, owner=agg_id, label="exchange-open")
        for agg_id, aggregator in self.aggregators.items():
            self._at(t0 + timing.start + self._delay(), aggregator.start_exchange, owner=agg_id,
                     label="exchange")
        for agg_id, aggregator in self.aggregators.items():
            self._at(t0 + timing.stop, aggregator.close_exchange, owner=agg_id, label="exchange-deadline")

    def _schedule_distribution(self, t0, timing, session_type):
        for agg_id, aggregator in self.aggregators.items():
            action = aggregator.distribute_local if session_type == SessionType.DISTRIBUTE_ONLY \
                else aggregator.distribute
            self._at(t0 + timing.start + self._delay(), action, owner=agg_id, label="distribute")
        for member_id, member in self.members.items():
            self._at(t0 + timing.stop, member.offset_deadline_passed, owner=member_id, label="offset-deadline")

    def _schedule_collection(self, t0, timing, session_type):
        use_pending = session_type == SessionType.COLLECT_ONLY
        for agg_id, aggregator in self.aggregators.items():
            self._at(t0 + timing.start, lambda a=aggregator: a.open_collection(use_pending),
                     owner=agg_id, label="collect")
        if use_pending:
            for member_id, member in self.members.items():
                self._at(t0 + timing.start, member.offset_deadline_passed, owner=member_id,
                         label="offset-deadline")
        for channel in self.channels:
            # Reports on a channel are spread so the last one still leaves before the deadline.
            spacing = self.config.report_spacing(len(channel))
            for index, member_id in enumerate(channel.members):
                send_at = t0 + timing.start + index * spacing + self._delay()
                self._at(send_at, self.members[member_id].send_report, owner=member_id, label="report")
        for member_id, member in self.members.items():
            self._at(t0 + timing.stop, member.collection_deadline_passed, owner=member_id,
                     label="collect-deadline")
        for agg_id, aggregator in self.aggregators.items():
            self._at(t0 + timing.stop, lambda a=aggregator: self._close(a), owner=agg_id,
                     label="collect-deadline")

    def _close(self, aggregator):
        outcome = aggregator.close_collection()
        self._outcomes[aggregator.id] = outcome

    def _finish(self, round_id, session_type, t0):
        outcomes, self._outcomes = self._outcomes, {}
        missed = [m for m, member in self.members.items() if member.missed]
        failed = [m for m, member in self.members.items() if member.failed]
        if session_type == SessionType.DISTRIBUTE_ONLY:
            contributed = [m for m, member in self.members.items() if member.has_pending_offset]
        else:
            contributed = [m for outcome in outcomes.values() for m in outcome.collected]
        counters = [a.counters() for a in self.aggregators.values()]
        counters += [m.counters() for m in self.members.values()]
        true_sums = {agg: sum(self.members[m].reading for m in outcome.collected)
                     for agg, outcome in outcomes.items()}

        for member in self.members.values():
            member.end_round()
        for aggregator in self.aggregators.values():
            aggregator.end_round()

        result = RoundResult(round_id, session_type, t0, self.scheduler.now, len(self.members),
                             contributed, outcomes=outcomes, missed=missed, failed=failed,
                             counters=counters, true_sums=true_sums)
        self.results.append(result)
        self._pending_result = result
        self.reporter.round_completed(result)
        logger.info("Round %d (%s) complete: %d/%d contributions", round_id, session_type,
                    result.collected, result.expected)

    def run(self, rounds, reading_source=None, session_types=None):
        """
        Run several rounds.

        Parameters:
          rounds         -- Number of rounds.
          reading_source -- Callable round_id -> readings, or None for distribute-only rounds.
          session_types  -- Optional list of session types, one per round (cycled).
        """
        results = []
        for i in range(rounds):
            session_type = session_types[i % len(session_types)] if session_types else None
            readings = reading_source(self.next_round) if reading_source is not None else None
            results.append(self.run_round(readings, session_type))
        return results

    def teardown_node(self, node_id):
        """Cancel everything a role still has scheduled and stop delivering to it."""
        cancelled = self.scheduler.cancel_owner(node_id)
        cancelled += self.scheduler.cancel_owner(("transport", node_id))
        self.transport.unregister(node_id)
        return cancelled

    def teardown(self):
        for node_id in list(self.aggregators) + list(self.members):
            self.teardown_node(node_id)
        self.scheduler.cancel_owner(SESSION_OWNER)
