"""Diagnostic figures for stage outputs (elbow, OOB error, enrichment nulls)."""

from __future__ import annotations

from pathlib import Path

import matplotlib

# Use a non-interactive backend for reproducible headless runs.
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

DPI = 150


def plot_elbow_curve(curve: pd.DataFrame, out_png: Path, title: str = "k-means elbow") -> None:
    fig, ax = plt.subplots(figsize=(5, 4))
    ax.plot(curve["k"], curve["inertia"], marker="o", color="black")
    ax.set_xlabel("k")
    ax.set_ylabel("Within-cluster sum of squares")
    ax.set_title(title)
    fig.tight_layout()
    fig.savefig(out_png.as_posix(), dpi=DPI)
    plt.close(fig)


def plot_oob_curve(curve: np.ndarray, out_png: Path, title: str = "OOB error") -> None:
    arr = np.asarray(curve, dtype=float)
    fig, ax = plt.subplots(figsize=(5, 4))
    ax.plot(np.arange(1, arr.size + 1), arr, color="steelblue")
    ax.set_xlabel("Trees")
    ax.set_ylabel("Out-of-bag error")
    ax.set_ylim(0.0, 1.0)
    ax.set_title(title)
    fig.tight_layout()
    fig.savefig(out_png.as_posix(), dpi=DPI)
    plt.close(fig)


def plot_null_hist(null_es: np.ndarray, observed: float, out_png: Path, title: str) -> None:
    fig, ax = plt.subplots(figsize=(5, 4))
    ax.hist(np.asarray(null_es, dtype=float), bins=25, color="steelblue", edgecolor="black", alpha=0.7)
    ax.axvline(observed, color="red", linestyle="--", linewidth=2, label="Observed")
    ax.set_title(title)
    ax.set_xlabel("Enrichment score")
    ax.set_ylabel("Count")
    ax.legend()
    fig.tight_layout()
    fig.savefig(out_png.as_posix(), dpi=DPI)
    plt.close(fig)
