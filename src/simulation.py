#!/usr/bin/env python3
"""
simulation.py

Simulate the privacy-preserving aggregation of smart-meter readings on a meter
mesh with two lead meters, and measure how many readings reach the
aggregators under packet loss.

The simulation supports:
  1. Varying number of member meters: [4, 16, 64, 128, ...]
  2. Varying the packet drop rate of the transport: [0.0, 0.01, 0.05, 0.1]
  3. Bidirectional rounds, or split rounds (distribute-only followed by collect-only)
  4. Turning the second re-masking stage on and off
  5. Grid or random meter deployment; hop counts over the mesh set packet delays
  6. Load-profile readings from a correlated Gaussian (AR(1)) or uniform model
  7. Measuring completeness, packets and bytes per link kind and the packet delivery fraction
  8. Checking that the unmasked group sum equals the sum of the collected readings
  9. Saving all results in a CSV file with checkpointing for restart

Run a single configuration:
    python simulation.py --size 16 --type-op 1 --rounds 5 --seed 7
Run the sweep:
    python simulation.py --sweep --rounds 10 --plot
"""

import argparse
import os

import pandas as pd

import plots
from config import (COLLECT, DISTRIBUTE, EXCHANGE, PhaseTiming, RoundConfig, SessionType,
                    default_phases, load_partition_csv)
from errors import ObfuscationError
from reporting import RoundReporter
from sensor_network import MeterNetwork
from session import Session
from utils import ensure_dir, get_logger

logger = get_logger(__name__)

# Rounds each session type runs, in order. A collect-only round needs the
# offsets of a preceding distribute-only round, so --type-op 3 runs both.
SESSION_PLANS = {
    "bidirectional": [SessionType.BIDIRECTIONAL],
    "distribute_only": [SessionType.DISTRIBUTE_ONLY],
    "split": [SessionType.DISTRIBUTE_ONLY, SessionType.COLLECT_ONLY],
}

PLAN_OF_SESSION_TYPE = {
    SessionType.BIDIRECTIONAL: "bidirectional",
    SessionType.DISTRIBUTE_ONLY: "distribute_only",
    SessionType.COLLECT_ONLY: "split",
}

# Start jitter of --random-start, in seconds.
RANDOM_START_JITTER = (0.001, 0.009)

# Sweep parameter lists.
nodes_list = [4, 16, 64, 128]
drop_rates = [0.0, 0.01, 0.05, 0.1]
session_plans = ["bidirectional", "split"]
remask_options = [False, True]

# Checkpoint file for results.
results_filename = "simulation_results.csv"


def phases_from_args(args):
    phases = default_phases()
    for name in (EXCHANGE, DISTRIBUTE, COLLECT):
        start = getattr(args, f"init_{name}")
        stop = getattr(args, f"stop_{name}")
        if start is not None or stop is not None:
            current = phases[name]
            phases[name] = PhaseTiming(current.start if start is None else start,
                                       current.stop if stop is None else stop)
    return phases


def plan_for_type_op(type_op):
    """Session plan of the numeric operation type given on the command line."""
    return PLAN_OF_SESSION_TYPE[SessionType.from_type_op(type_op)]


def build_network(n, partition=None, seed=None, topology="grid", load_model="correlated_gaussian",
                  single_gateway=False):
    """
    Build the meter mesh. The lead meters take the aggregator ids of the
    partition when it names exactly as many as the layout needs (one gateway,
    or two peers); otherwise no mesh is built and the transport uses flat
    delays.
    """
    lead_ids = ("gateway",) if single_gateway else ("lead0", "lead1")
    if partition is not None:
        aggregators = partition.aggregators()
        if len(aggregators) != len(lead_ids):
            return None
        lead_ids = tuple(aggregators)
    return MeterNetwork(n, topology=topology, seed=seed, lead_ids=lead_ids, load_model=load_model)


def run_simulation(n, plan="bidirectional", rounds=10, seed=None, drop_rate=0.0, remask=False,
                   phases=None, partition=None, partition_mode="odd_even", topology="grid",
                   load_model="correlated_gaussian", tags=None, network=None,
                   single_gateway=False, start_jitter=None):
    """
    Run `rounds` rounds of one configuration. Returns (session, reporter).

    Parameters:
      n              -- Number of member meters.
      plan           -- Key of SESSION_PLANS.
      rounds         -- Number of rounds; the plan's session types are cycled.
      seed           -- Seed for the mesh, the load streams and the session.
      drop_rate      -- Packet drop probability.
      remask         -- Enable the second re-masking stage.
      phases         -- Dict of PhaseTiming (default_phases() if None).
      partition      -- Explicit Partition; otherwise built per partition_mode.
      partition_mode -- "odd_even" or "nearest" (members go to the closest lead).
      topology       -- "grid" or "random".
      load_model     -- "correlated_gaussian" or "uniform".
      tags           -- Extra constant columns for the result rows.
      network        -- Prebuilt MeterNetwork (built here if None).
      single_gateway -- One gateway serves every member without a peer.
      start_jitter   -- Optional (low, high) seconds of random delay on phase starts.
    """
    if plan not in SESSION_PLANS:
        raise ValueError(f"Unknown session plan {plan!r}")
    if network is None:
        network = build_network(n, partition, seed=seed, topology=topology, load_model=load_model,
                                single_gateway=single_gateway)
    if partition is None and network is not None:
        if partition_mode == "nearest" or single_gateway:
            partition = network.nearest_lead_partition()
        else:
            partition = network.odd_even_partition()

    # Group the leads explicitly so a lead left without members still takes part in the exchange.
    pairs = None
    if network is not None:
        pairs = [(lead,) for lead in network.lead_ids] if single_gateway else [network.lead_ids]
    config = RoundConfig(n, partition=partition, phases=phases, remask_enabled=remask,
                         session_type=SESSION_PLANS[plan][0], pairs=pairs,
                         single_gateway=single_gateway, start_jitter=start_jitter)
    config.validate(SESSION_PLANS[plan])

    reporter = RoundReporter(tags)
    session = Session(config, seed=seed, reporter=reporter, network=network, drop_rate=drop_rate)

    # Without a mesh the load streams still come from a grid deployment.
    meters = network if network is not None else MeterNetwork(n, seed=seed, load_model=load_model)

    def reading_source(round_id):
        return meters.readings(config.reading_range)

    session.run(rounds, reading_source=reading_source, session_types=SESSION_PLANS[plan])
    session.teardown()
    return session, reporter


def _done_configs(df):
    if df.empty:
        return set()
    keys = df[["nodes", "drop_rate", "plan", "remask"]].drop_duplicates()
    return {(int(r.nodes), float(r.drop_rate), r.plan, bool(r.remask)) for r in keys.itertuples()}


def run_sweep(nodes=None, rates=None, plans=None, remasks=None, rounds=10, seed=81278181,
              filename=results_filename, topology="grid"):
    """
    Run every configuration of the sweep that is not yet in `filename` and
    append its rows to the file after each configuration.
    """
    nodes = nodes or nodes_list
    rates = rates if rates is not None else drop_rates
    plans = plans or session_plans
    remasks = remasks if remasks is not None else remask_options

    if os.path.exists(filename):
        df_results = pd.read_csv(filename)
    else:
        df_results = pd.DataFrame()
    done = _done_configs(df_results)

    for n in nodes:
        for drop_rate in rates:
            for plan in plans:
                for remask in remasks:
                    if (n, float(drop_rate), plan, bool(remask)) in done:
                        print(f"Skipping completed config: n={n}, drop_rate={drop_rate}, plan={plan}, remask={remask}")
                        continue
                    config_str = f"n={n}, drop_rate={drop_rate}, plan={plan}, remask={remask}"
                    print("Running simulation for config:", config_str)
                    tags = {"nodes": n, "drop_rate": drop_rate, "plan": plan, "remask": remask,
                            "topology": topology, "seed": seed}
                    _, reporter = run_simulation(n, plan=plan, rounds=rounds, seed=seed, drop_rate=drop_rate,
                                                 remask=remask, topology=topology, tags=tags)
                    df_config = reporter.to_dataframe()
                    df_results = pd.concat([df_results, df_config], ignore_index=True)
                    df_results.to_csv(filename, index=False)
                    print(f"Config {config_str} completed with {rounds} rounds.\n")
    return df_results


def build_parser():
    parser = argparse.ArgumentParser(description="Simulate obfuscated aggregation of smart-meter readings.")
    parser.add_argument("--size", type=int, default=16, help="Number of member meters.")
    parser.add_argument("--type-op", default=1,
                        help="1: bidirectional, 2: distribute only, 3: distribute then collect only.")
    for name in (EXCHANGE, DISTRIBUTE, COLLECT):
        parser.add_argument(f"--init-{name}", type=float, default=None,
                            help=f"Start of the {name} phase, seconds after the round start.")
        parser.add_argument(f"--stop-{name}", type=float, default=None,
                            help=f"Deadline of the {name} phase, seconds after the round start.")
    parser.add_argument("--remask", action="store_true", help="Enable the second re-masking stage.")
    parser.add_argument("--single-gateway", action="store_true",
                        help="One gateway serves every member and draws both mask vectors itself.")
    parser.add_argument("--random-start", action="store_true",
                        help="Delay every phase start by a random 1-9 ms.")
    parser.add_argument("--drop-rate", type=float, default=0.0, help="Packet drop probability.")
    parser.add_argument("--partition", default=None,
                        help="CSV file with member_id and aggregator_id columns.")
    parser.add_argument("--partition-mode", choices=("odd_even", "nearest"), default="odd_even")
    parser.add_argument("--topology", choices=("grid", "random"), default="grid")
    parser.add_argument("--load-model", choices=("correlated_gaussian", "uniform"), default="correlated_gaussian")
    parser.add_argument("--seed", type=int, default=81278181)
    parser.add_argument("--rounds", type=int, default=10)
    parser.add_argument("--results", default=results_filename, help="Results CSV file.")
    parser.add_argument("--sweep", action="store_true", help="Run the full parameter sweep.")
    parser.add_argument("--plot", action="store_true", help="Write plots to --output-dir.")
    parser.add_argument("--output-dir", default="plots")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.sweep:
        df = run_sweep(rounds=args.rounds, seed=args.seed, filename=args.results, topology=args.topology)
        if args.plot:
            plots.plot_completeness(df, args.output_dir)
            plots.plot_messages(df, args.output_dir)
        return 0

    try:
        plan = plan_for_type_op(args.type_op)
        partition = load_partition_csv(args.partition) if args.partition else None
        session, reporter = run_simulation(
            args.size, plan=plan, rounds=args.rounds, seed=args.seed, drop_rate=args.drop_rate,
            remask=args.remask, phases=phases_from_args(args), partition=partition,
            partition_mode=args.partition_mode, topology=args.topology, load_model=args.load_model,
            single_gateway=args.single_gateway,
            start_jitter=RANDOM_START_JITTER if args.random_start else None,
            tags={"nodes": args.size, "drop_rate": args.drop_rate, "plan": plan, "remask": args.remask,
                  "topology": args.topology, "seed": args.seed})
    except ObfuscationError as e:
        logger.error("Configuration rejected: %s", e)
        return 2

    reporter.to_csv(args.results)
    df = reporter.to_dataframe()
    print(df[["round_id", "session_type", "expected", "collected", "completeness", "pdf"]].to_string(index=False))
    print(f"Results appended to {args.results}")

    if args.plot:
        ensure_dir(args.output_dir)
        network = session.transport.network
        if network is not None:
            network.draw_network(session.config.partition, os.path.join(args.output_dir, "network.pdf"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
