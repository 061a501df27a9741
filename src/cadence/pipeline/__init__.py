"""Tick pipeline: FeatureVector → Baseline | Similarity → Drift → Histories.

Components:
- Monitor: Tick-driven coordinator
- TickOutcome: What a single tick produced
"""

from cadence.pipeline.monitor import Monitor, TickOutcome

__all__ = ["Monitor", "TickOutcome"]
