"""Figures written next to saved mapping results."""

from .null_distribution import plot_null_distribution

__all__ = ["plot_null_distribution"]
