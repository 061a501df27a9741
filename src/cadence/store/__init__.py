"""Parquet export of CADENCE histories and baselines."""

from cadence.store.parquet_store import HistoryStore

__all__ = ["HistoryStore"]
