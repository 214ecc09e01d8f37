#!/usr/bin/env python3
"""
plots.py

Facet plots of the sweep results written by simulation.py.

    python plots.py simulation_results.csv plots
"""

import os
import sys

import matplotlib
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from utils import ensure_dir

dpi = 300

link_map = {
    'tx_aggregator->aggregator': 'Peer masks',
    'tx_aggregator->member': 'Offsets',
    'tx_member->aggregator': 'Reports',
}


def set_plot_style():
    plt.rcParams["xtick.direction"] = "in"
    plt.rcParams["ytick.direction"] = "in"
    plt.rcParams["font.size"] = 11.0
    plt.rcParams["figure.figsize"] = (8, 6)


def melt_and_map(df, id_vars, value_vars, var_name, value_name, map_dict):
    melted = pd.melt(df, id_vars=id_vars, value_vars=value_vars, var_name=var_name, value_name=value_name)
    melted[var_name] = melted[var_name].map(map_dict)
    return melted


def create_facet_plot(df, row, col, x, y, hue, title, x_label, y_label, filename, output_dir="plots"):
    sns.set_style("white")
    g = sns.FacetGrid(df, row=row, col=col, margin_titles=True, height=3.5)
    g.map_dataframe(sns.lineplot, x=x, y=y, hue=hue, marker='o', errorbar='sd', palette='Spectral')
    g.add_legend(title=hue)
    g.set_axis_labels(x_label, y_label)
    g.fig.subplots_adjust(top=0.9)
    g.set_titles(size=14)
    outfile = os.path.join(output_dir, filename)
    print(f'{title} → {outfile}')
    g.savefig(outfile, dpi=dpi)
    plt.close(g.fig)
    return outfile


def plot_completeness(df, output_dir="plots"):
    """Completeness (%) of collect rounds against the number of meters."""
    ensure_dir(output_dir)
    set_plot_style()
    collect_df = df.loc[df['session_type'] != 'distribute_only'].copy()
    collect_df['Completeness (%)'] = 100.0 * collect_df['completeness']
    collect_df["drop_rate"] = collect_df["drop_rate"].astype(str)
    collect_df = collect_df.rename(columns={"nodes": "Meters", "drop_rate": "Drop rate",
                                            "plan": "Plan", "remask": "Re-mask"})
    return create_facet_plot(
        collect_df, "Plan", "Re-mask", "Meters", "Completeness (%)", "Drop rate",
        "Completeness vs. Number of Meters",
        "Number of Meters", "Completeness (%)", "completeness.pdf", output_dir
    )


def plot_messages(df, output_dir="plots"):
    """Packets sent per round, split by message kind."""
    ensure_dir(output_dir)
    set_plot_style()
    value_vars = [c for c in link_map if c in df.columns]
    msg_df = melt_and_map(df, ['nodes', 'drop_rate', 'plan'], value_vars, 'message', 'packets', link_map)
    msg_df = msg_df.rename(columns={"nodes": "Meters", "drop_rate": "Drop rate", "plan": "Plan",
                                    "packets": "Packets per Round"})
    return create_facet_plot(
        msg_df, "Plan", "Drop rate", "Meters", "Packets per Round", "message",
        "Packets per Round vs. Number of Meters",
        "Number of Meters", "Packets per Round", "messages.pdf", output_dir
    )


if __name__ == "__main__":
    matplotlib.use("Agg")
    results = sys.argv[1] if len(sys.argv) > 1 else "simulation_results.csv"
    out = sys.argv[2] if len(sys.argv) > 2 else "plots"
    df = pd.read_csv(results)
    plot_completeness(df, out)
    plot_messages(df, out)
