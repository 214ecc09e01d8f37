#!/usr/bin/env python3
"""
transport.py

Simulated unreliable datagram transport between meters. A send schedules the
delivery callback of the destination on the shared Scheduler after a random
delay. Packets may be dropped at random or by a caller supplied filter, and
independent random delays mean packets can be reordered.

If a MeterNetwork is attached, the delay of a packet is the number of mesh hops
between source and destination times a random per-hop delay.
"""

from collections import defaultdict

from utils import get_logger

logger = get_logger(__name__)


class LinkStats:
    """Packet and byte counters for one (source, destination) link."""

    def __init__(self):
        self.tx_packets = 0
        self.tx_bytes = 0
        self.rx_packets = 0
        self.rx_bytes = 0
        self.dropped = 0
        self.delay_sum = 0.0

    @property
    def lost(self):
        return self.tx_packets - self.rx_packets

    def as_dict(self):
        return {
            "tx_packets": self.tx_packets,
            "tx_bytes": self.tx_bytes,
            "rx_packets": self.rx_packets,
            "rx_bytes": self.rx_bytes,
            "dropped": self.dropped,
            "avg_delay": self.delay_sum / self.rx_packets if self.rx_packets else 0.0,
        }


class SimulatedTransport:
    """
    Delivers byte payloads between registered nodes through the scheduler.
    """

    def __init__(self, scheduler, rng, delay_range=(0.001, 0.01), drop_rate=0.0,
                 network=None, drop_filter=None):
        """
        Parameters:
          scheduler   -- Scheduler used to deliver packets.
          rng         -- MaskGenerator-like object with an `rng` RandomState, owned by the transport.
          delay_range -- (min, max) delay in seconds per packet, or per hop with a network.
          drop_rate   -- Probability that a packet is lost.
          network     -- Optional MeterNetwork used for hop counts.
          drop_filter -- Optional predicate (source, destination, payload) -> True to drop.
        """
        if not 0.0 <= drop_rate <= 1.0:
            raise ValueError("drop_rate must be in [0, 1]")
        self.scheduler = scheduler
        self.rng = rng.rng if hasattr(rng, "rng") else rng
        self.delay_range = delay_range
        self.drop_rate = drop_rate
        self.network = network
        self.drop_filter = drop_filter
        self.handlers = {}
        self.links = defaultdict(LinkStats)
        self.listeners = []

    def register(self, node_id, on_receive):
        self.handlers[node_id] = on_receive

    def unregister(self, node_id):
        self.handlers.pop(node_id, None)

    def add_listener(self, listener):
        """listener(event, source, destination, size) is called for 'tx', 'rx' and 'drop' events."""
        self.listeners.append(listener)

    def _notify(self, event, source, destination, size):
        for listener in self.listeners:
            listener(event, source, destination, size)

    def _delay(self, source, destination):
        low, high = self.delay_range
        per_packet = self.rng.uniform(low, high)
        if self.network is None:
            return per_packet
        return per_packet * max(1, self.network.hops(source, destination))

    def send(self, source, destination, payload):
        payload = bytes(payload)
        link = self.links[(source, destination)]
        link.tx_packets += 1
        link.tx_bytes += len(payload)
        self._notify("tx", source, destination, len(payload))

        if self.drop_filter is not None and self.drop_filter(source, destination, payload):
            self._drop(link, source, destination, payload, "filtered")
            return
        if self.drop_rate > 0.0 and self.rng.random_sample() < self.drop_rate:
            self._drop(link, source, destination, payload, "lost")
            return

        delay = self._delay(source, destination)
        sent_at = self.scheduler.now

        def deliver():
            handler = self.handlers.get(destination)
            if handler is None:
                self._drop(link, source, destination, payload, "no receiver")
                return
            link.rx_packets += 1
            link.rx_bytes += len(payload)
            link.delay_sum += self.scheduler.now - sent_at
            self._notify("rx", source, destination, len(payload))
            handler(payload, source)

        self.scheduler.schedule_in(delay, deliver, owner=("transport", destination), label="deliver")

    def _drop(self, link, source, destination, payload, reason):
        link.dropped += 1
        self._notify("drop", source, destination, len(payload))
        logger.debug("Dropped %d bytes %r -> %r (%s)", len(payload), source, destination, reason)

    def packet_delivery_fraction(self):
        tx = sum(l.tx_packets for l in self.links.values())
        rx = sum(l.rx_packets for l in self.links.values())
        return 100.0 * rx / tx if tx else 0.0
