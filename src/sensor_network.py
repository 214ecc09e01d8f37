#!/usr/bin/env python3
"""
sensor_network.py

A module for simulating a smart-meter mesh network. Meters are placed on a
grid (x_size x y_size with a fixed step) or uniformly at random in a w x w
area, and an edge is added between two meters if they are within the radio
range. Two of the meters act as lead meters (aggregators); the remaining ones
are members. Hop counts over the mesh give the transport its per-packet delay.

This version supports:
  - Temporal correlation of household load using an AR(1) model.
  - Spatial correlation via a smooth bias function.
  - Uniform load as an uncorrelated baseline.
Readings are quantised to integers and clipped to the accepted reading range.
"""

import math

import matplotlib.pyplot as plt
import networkx as nx
import numpy as np
import seaborn as sns

from config import Partition


#############################
# Load streams
#############################

class LoadStream:
    """Base class for a meter's stream of readings."""

    def __init__(self, rng):
        self.rng = rng

    def get_next(self):
        """Return the next reading as a float."""
        raise NotImplementedError("Subclasses should implement get_next().")


class CorrelatedGaussianLoadStream(LoadStream):
    """
    Household load from an AR(1) process:
       v(t) = bias + rho*(v(t-1) - bias) + noise,
    where noise ~ N(0, sigma^2). The bias depends on the meter's (x, y) position.
    """

    def __init__(self, rng, x, y, base=500.0, amplitude=200.0, rho=0.8, sigma=50.0, w=100.0):
        """
        Parameters:
          rng       : numpy RandomState owned by the caller.
          x, y      : Meter position.
          base      : Mean load.
          amplitude : Strength of the spatial variation of the mean.
          rho       : AR(1) coefficient (0 < rho < 1).
          sigma     : Standard deviation of the noise.
          w         : Width of the deployment area.
        """
        super().__init__(rng)
        self.x = x
        self.y = y
        self.base = base
        self.amplitude = amplitude
        self.rho = rho
        self.sigma = sigma
        self.w = w
        self.prev = self.spatial_bias()

    def spatial_bias(self):
        return self.base + self.amplitude * math.sin(2 * math.pi * self.x / self.w) * \
            math.cos(2 * math.pi * self.y / self.w)

    def get_next(self):
        bias = self.spatial_bias()
        new_val = bias + self.rho * (self.prev - bias) + self.rng.normal(0, self.sigma)
        self.prev = new_val
        return new_val


class UniformLoadStream(LoadStream):
    """Load drawn uniformly from [low, high)."""

    def __init__(self, rng, low=0.0, high=1000.0):
        super().__init__(rng)
        self.low = low
        self.high = high

    def get_next(self):
        return self.rng.uniform(self.low, self.high)


#############################
# Meters
#############################

class Meter:
    """A smart meter with an id, a position and a load stream (None for lead meters)."""

    def __init__(self, node_id, x, y, stream=None):
        self.id = node_id
        self.x = x
        self.y = y
        self.stream = stream

    def position(self):
        return (self.x, self.y)

    def __repr__(self):
        return f"Meter({self.id}, pos=({self.x:.2f}, {self.y:.2f}))"


#############################
# Mesh network
#############################

class MeterNetwork:
    """
    A meter mesh with `n` member meters and two lead meters.

    On a grid the leads take two opposite corners of the smallest square
    layout with room for n + 2 meters and the members fill the remaining
    cells in row order. In a random topology the leads sit at 1/4 and 3/4 of
    the area diagonal.
    """

    def __init__(self, n, step=50.0, comm_radius=None, topology="grid", w=None, seed=None,
                 lead_ids=("lead0", "lead1"), load_model="correlated_gaussian"):
        """
        Parameters:
          n           -- Number of member meters (ids 0 .. n-1).
          step        -- Grid spacing in metres.
          comm_radius -- Radio range; defaults to 1.5 * step (grid neighbours and diagonals).
          topology    -- "grid" or "random".
          w           -- Width of the area for random deployment (defaults to the grid width).
          seed        -- Seed for placement and load streams.
          lead_ids    -- Ids of the lead meters: two peers, or a single gateway.
          load_model  -- "correlated_gaussian" or "uniform".
        """
        if topology not in ("grid", "random"):
            raise ValueError(f"Unknown topology {topology!r}")
        self.n = n
        self.step = step
        self.comm_radius = comm_radius if comm_radius is not None else 1.5 * step
        self.topology = topology
        self.side = max(1, int(math.ceil(math.sqrt(n + 2))))
        self.w = w if w is not None else step * self.side
        self.rng = np.random.RandomState(seed)
        self.lead_ids = tuple(lead_ids)
        self.load_model = load_model

        self.members = []
        self.leads = []
        self.graph = None
        self._hops = {}

        self._deploy_meters()
        self._build_graph()
        self._ensure_connected()

    def _position(self, cell):
        return (cell % self.side) * self.step, (cell // self.side) * self.step

    def _stream(self, x, y):
        if self.load_model == "uniform":
            return UniformLoadStream(self.rng)
        return CorrelatedGaussianLoadStream(self.rng, x, y, w=self.w)

    def _deploy_meters(self):
        if self.topology == "grid":
            cells = list(range(self.side * self.side))
            lead_cells = [cells[0], cells[-1]]
            member_cells = [c for c in cells if c not in lead_cells][:self.n]
            for lead_id, cell in zip(self.lead_ids, lead_cells):
                self.leads.append(Meter(lead_id, *self._position(cell)))
            for i, cell in enumerate(member_cells):
                x, y = self._position(cell)
                self.members.append(Meter(i, x, y, self._stream(x, y)))
        else:
            for lead_id, frac in zip(self.lead_ids, (0.25, 0.75)):
                self.leads.append(Meter(lead_id, frac * self.w, frac * self.w))
            for i in range(self.n):
                x = self.rng.uniform(0, self.w)
                y = self.rng.uniform(0, self.w)
                self.members.append(Meter(i, x, y, self._stream(x, y)))

    def _build_graph(self):
        self.graph = nx.Graph()
        for meter in self.members:
            self.graph.add_node(meter.id, pos=meter.position(), type='member')
        for meter in self.leads:
            self.graph.add_node(meter.id, pos=meter.position(), type='lead')

        all_meters = self.members + self.leads
        for i in range(len(all_meters)):
            for j in range(i + 1, len(all_meters)):
                pos_i = np.array(all_meters[i].position())
                pos_j = np.array(all_meters[j].position())
                if np.linalg.norm(pos_i - pos_j) <= self.comm_radius:
                    self.graph.add_edge(all_meters[i].id, all_meters[j].id)

    def _ensure_connected(self):
        if nx.is_connected(self.graph):
            return
        anchor = self.leads[0].id
        for comp in list(nx.connected_components(self.graph)):
            if anchor not in comp:
                node_id = next(iter(comp))
                self.graph.add_edge(node_id, anchor)
        assert nx.is_connected(self.graph), "Mesh is still not connected after adding lead edges."

    def hops(self, source, destination):
        """Number of mesh hops between two meters."""
        if source not in self._hops:
            self._hops[source] = nx.single_source_shortest_path_length(self.graph, source)
        return self._hops[source][destination]

    def readings(self, reading_range=None):
        """Draw one integer reading per member, clipped to reading_range if given."""
        values = {}
        for meter in self.members:
            v = int(round(meter.stream.get_next()))
            if reading_range is not None:
                v = min(max(v, reading_range.low), reading_range.max_value)
            values[meter.id] = v
        return values

    def odd_even_partition(self):
        even_lead, odd_lead = self.lead_ids
        return Partition.odd_even(self.n, even_lead, odd_lead)

    def nearest_lead_partition(self):
        """Assign each member to the lead fewest hops away (ties go to the first lead)."""
        assignment = {}
        for meter in self.members:
            distances = [(self.hops(lead.id, meter.id), k) for k, lead in enumerate(self.leads)]
            assignment[meter.id] = self.lead_ids[min(distances)[1]]
        return Partition(assignment)

    def draw_network(self, partition=None, filename=None):
        sns.set_style("whitegrid")
        pos = nx.get_node_attributes(self.graph, 'pos')
        fig = plt.figure(figsize=(8, 8))
        palette = sns.color_palette("Set2", len(self.lead_ids))
        for k, lead_id in enumerate(self.lead_ids):
            if partition is not None:
                group = [m.id for m in self.members if partition.aggregator_of(m.id) == lead_id]
            else:
                group = [m.id for m in self.members] if k == 0 else []
            nx.draw_networkx_nodes(self.graph, pos, nodelist=group, node_color=[palette[k]], node_size=40,
                                   label=f'Members of {lead_id}' if partition is not None else 'Members')
        nx.draw_networkx_nodes(self.graph, pos, nodelist=list(self.lead_ids), node_color='red', node_size=90,
                               label='Lead meters')
        nx.draw_networkx_edges(self.graph, pos, alpha=0.15)
        plt.legend()
        plt.axis('equal')
        if filename is not None:
            fig.savefig(filename, dpi=300)
            plt.close(fig)
        return fig

    def __repr__(self):
        return f"MeterNetwork(n={self.n}, topology={self.topology}, edges={self.graph.number_of_edges()})"
