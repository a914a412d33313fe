"""
Figures for the article.
"""

import os

import numpy as np
import matplotlib.pyplot as plt

from .compare import MODEL_LABELS

# -- Style --
STYLE = {
    "figure.facecolor": "#FAFAFA", "axes.facecolor": "#FAFAFA",
    "axes.edgecolor": "#333", "axes.labelcolor": "#222",
    "xtick.color": "#555", "ytick.color": "#555", "text.color": "#222",
    "font.size": 10, "axes.titlesize": 12, "axes.titleweight": "bold",
    "axes.grid": True, "grid.alpha": 0.25, "grid.color": "#AAA", "figure.dpi": 140,
}
CB, CO, CG, CR, CP, CY = "#2171B5", "#E6550D", "#31A354", "#DE2D26", "#756BB1", "#888"
ARM_COLORS = {0: CB, 1: CO}
ARM_NAMES = {0: "Control", 1: "Treatment"}


def apply_style():
    plt.rcParams.update(STYLE)


def savefig(fig, path):
    """Save a figure to `path` and close it."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    fig.savefig(path, bbox_inches="tight", dpi=150)
    plt.close(fig)
    return path


def plot_trajectories(data, n_show=30, pattern_col="pattern", fitted=None):
    """
    A) individual observed trajectories by arm,
    B) observed means by arm and dropout pattern.

    `fitted` is an optional contrasts.marginal_means table, drawn as
    dash-dot lines in panel B.
    """
    apply_style()
    fig, axes = plt.subplots(1, 2, figsize=(12, 4.5), sharey=True)

    ax = axes[0]
    for arm in (0, 1):
        ids = data.loc[data["treatment"] == arm, "subject"].unique()[:n_show]
        for sid in ids:
            d = data[data["subject"] == sid]
            ax.plot(d["time"], d["y"], c=ARM_COLORS[arm], alpha=.3, lw=1)
        ax.plot([], [], c=ARM_COLORS[arm], label=ARM_NAMES[arm])
    ax.set_xlabel("Time"); ax.set_ylabel("Outcome")
    ax.set_title("A) Observed trajectories"); ax.legend(fontsize=8)

    ax = axes[1]
    styles = ["-", "--", ":"]
    if pattern_col in data.columns:
        levels = [l for l in data[pattern_col].cat.categories
                  if (data[pattern_col] == l).any()]
    else:
        levels = [None]
    for arm in (0, 1):
        for ls, level in zip(styles, levels):
            d = data[data["treatment"] == arm]
            if level is not None:
                d = d[d[pattern_col] == level]
            m = d.groupby("time")["y"].mean()
            label = ARM_NAMES[arm] + (f" / {level}" if level else "")
            ax.plot(m.index, m.values, c=ARM_COLORS[arm], ls=ls, lw=2,
                    marker="o", ms=3, label=label)
    if fitted is not None:
        for arm in (0, 1):
            f = fitted[fitted["treatment"] == arm]
            ax.plot(f["time"], f["estimate"], c=ARM_COLORS[arm], ls="-.",
                    lw=1.5, label=f"{ARM_NAMES[arm]} / LMM fit")
    ax.set_xlabel("Time"); ax.set_title("B) Observed means by pattern")
    ax.legend(fontsize=8)
    fig.tight_layout()
    return fig


def plot_dropout_vs_slope(subjects, bins=8):
    """Dropout proportion against the true random slope, by arm."""
    apply_style()
    fig, ax = plt.subplots(figsize=(6.5, 4.5))
    edges = np.quantile(subjects["u1"], np.linspace(0, 1, bins + 1))
    for arm in (0, 1):
        s = subjects[subjects["treatment"] == arm]
        cut = np.clip(np.digitize(s["u1"], edges[1:-1]), 0, bins - 1)
        mid = [s["u1"][cut == k].mean() for k in range(bins)]
        rate = [s["dropout"][cut == k].mean() for k in range(bins)]
        ax.plot(mid, rate, c=ARM_COLORS[arm], marker="o", lw=2,
                label=ARM_NAMES[arm])
    ax.set_xlabel("True random slope u1"); ax.set_ylabel("Dropout proportion")
    ax.set_ylim(0, 1)
    ax.set_title("Dropout depends on the unobserved slope")
    ax.legend(fontsize=8)
    return fig


def plot_model_comparison(table, truth):
    """Slope-difference estimates +/- 95% CI for each model."""
    apply_style()
    fig, ax = plt.subplots(figsize=(7, 0.6 * len(table) + 1.5))
    ypos = np.arange(len(table))[::-1]
    ax.errorbar(table["estimate"], ypos,
                xerr=[table["estimate"] - table["ci_lo"],
                      table["ci_hi"] - table["estimate"]],
                fmt="o", c=CB, ecolor=CB, capsize=4, lw=2)
    ax.axvline(truth, color=CR, ls="--", lw=1.5, label=f"True = {truth}")
    ax.set_yticks(ypos)
    ax.set_yticklabels(table["label"])
    ax.set_xlabel("Treatment x time (slope difference)")
    ax.set_title("Estimates on one simulated trial")
    ax.legend(fontsize=8)
    fig.tight_layout()
    return fig


def plot_study(raw, truth):
    """Sampling distributions of the estimators across replications."""
    apply_style()
    ok = raw[raw["converged"].astype(bool) & np.isfinite(raw["estimate"])]
    models = [m for m in MODEL_LABELS if m in set(ok["model"])]
    fig, ax = plt.subplots(figsize=(9, 4.5))
    data = [ok.loc[ok["model"] == m, "estimate"].to_numpy() for m in models]
    bp = ax.boxplot(data, vert=False, patch_artist=True)
    ax.set_yticks(np.arange(1, len(models) + 1))
    ax.set_yticklabels([MODEL_LABELS[m] for m in models])
    for patch in bp["boxes"]:
        patch.set_facecolor(CB); patch.set_alpha(.35)
    ax.axvline(truth, color=CR, ls="--", lw=1.5, label=f"True = {truth}")
    ax.invert_yaxis()
    ax.set_xlabel("Estimated slope difference")
    ax.set_title(f"Simulation study ({raw['sim'].nunique()} replications)")
    ax.legend(fontsize=8)
    fig.tight_layout()
    return fig
