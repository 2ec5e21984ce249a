"""Diagnostic plotting helpers."""

from biorank.plotting.diagnostics import plot_elbow_curve, plot_null_hist, plot_oob_curve

__all__ = ["plot_elbow_curve", "plot_oob_curve", "plot_null_hist"]
