"""Tests for HistoryStore: write-once Parquet exports per session."""

from pathlib import Path

import pandas as pd
import pytest

from cadence.engine.drift import DriftDetector
from cadence.store import HistoryStore
from cadence.store.parquet_store import drift_frame, similarity_frame


@pytest.fixture
def temp_store(tmp_path: Path) -> HistoryStore:
    """Create a temporary HistoryStore for testing."""
    return HistoryStore(base_path=tmp_path / "exports")


@pytest.fixture
def results(series_factory):
    return series_factory([1.0, 0.9, 0.8, 0.7, 0.6, 0.5])


@pytest.fixture
def events(results):
    detector = DriftDetector()
    for r in results:
        detector.update(r)
    return detector.history


class TestFrames:
    """Test DataFrame conversion of engine outputs."""

    def test_similarity_frame(self, results) -> None:
        frame = similarity_frame(results)
        assert len(frame) == 6
        assert list(frame["overall"]) == [1.0, 0.9, 0.8, 0.7, 0.6, 0.5]
        assert "anomaly_count" in frame.columns

    def test_drift_frame(self, events) -> None:
        frame = drift_frame(events)
        assert len(frame) == len(events) >= 1
        assert frame.iloc[0]["state"] == "watch"
        assert isinstance(frame.iloc[0]["recommended_actions"], str)
        assert {"stability_variance", "stability_volatility", "stability_trend"} <= set(frame.columns)
        assert "stability_metrics" not in frame.columns


class TestHistoryStoreBasics:
    """Test basic read/write operations."""

    @pytest.mark.asyncio
    async def test_missing_export(self, temp_store: HistoryStore) -> None:
        """Missing exports read as None."""
        assert await temp_store.read("session-1", "similarity") is None

    @pytest.mark.asyncio
    async def test_write_and_read(self, temp_store: HistoryStore, results) -> None:
        """Write similarity history and read it back."""
        file_path = await temp_store.write_similarity("session-1", results)

        assert file_path.exists()
        assert file_path.name == "similarity.parquet"
        assert file_path.parent.name == "session-1"

        frame = await temp_store.read("session-1", "similarity")
        assert frame is not None
        expected = similarity_frame(results)
        assert list(frame.columns) == list(expected.columns)
        pd.testing.assert_series_equal(frame["overall"], expected["overall"])
        assert list(frame["baseline_version"]) == [1] * 6

    @pytest.mark.asyncio
    async def test_write_drift(self, temp_store: HistoryStore, events) -> None:
        await temp_store.write_drift("session-1", events)
        frame = await temp_store.read("session-1", "drift")
        assert len(frame) == len(events)

    @pytest.mark.asyncio
    async def test_write_baseline(self, temp_store: HistoryStore, constant_profile) -> None:
        """Baselines are exported per version."""
        path = await temp_store.write_baseline("session-1", constant_profile)
        assert path.name == "baseline_v1.parquet"
        frame = await temp_store.read("session-1", "baseline_v1")
        assert len(frame) == 95
        assert frame.iloc[0]["feature"] == "typing.mean_dwell_ms"


class TestImmutability:
    """Test write-once semantics."""

    @pytest.mark.asyncio
    async def test_no_overwrite_by_default(self, temp_store: HistoryStore, results) -> None:
        await temp_store.write_similarity("session-1", results)
        with pytest.raises(FileExistsError, match="already exists"):
            await temp_store.write_similarity("session-1", results)

    @pytest.mark.asyncio
    async def test_overwrite(self, temp_store: HistoryStore, results) -> None:
        await temp_store.write_similarity("session-1", results)
        await temp_store.write_similarity("session-1", results[:2], overwrite=True)
        frame = await temp_store.read("session-1", "similarity")
        assert len(frame) == 2

    @pytest.mark.asyncio
    async def test_empty_frame_rejected(self, temp_store: HistoryStore) -> None:
        with pytest.raises(ValueError, match="empty DataFrame"):
            await temp_store.write_similarity("session-1", [])


class TestPathSafety:
    """Names never escape the export root."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "..", "../etc", "a/b", ".hidden"])
    async def test_invalid_session_names(self, temp_store: HistoryStore, results, name) -> None:
        with pytest.raises(ValueError, match="Invalid name"):
            await temp_store.write_similarity(name, results)

    @pytest.mark.asyncio
    async def test_invalid_kind(self, temp_store: HistoryStore, results) -> None:
        with pytest.raises(ValueError, match="Invalid name"):
            await temp_store.write("session-1", "../x", similarity_frame(results))


class TestListingAndStats:
    """Test listing and statistics."""

    @pytest.mark.asyncio
    async def test_corrupted_file_reads_none(self, temp_store: HistoryStore) -> None:
        """Unreadable files are reported as missing."""
        path = temp_store.base_path / "session-1" / "similarity.parquet"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"not parquet")
        assert await temp_store.read("session-1", "similarity") is None

    @pytest.mark.asyncio
    async def test_listing(self, temp_store: HistoryStore, results, events, constant_profile) -> None:
        await temp_store.write_similarity("b-session", results)
        await temp_store.write_drift("a-session", events)
        await temp_store.write_baseline("a-session", constant_profile)

        assert await temp_store.list_sessions() == ["a-session", "b-session"]
        assert await temp_store.list_kinds("a-session") == ["baseline_v1", "drift"]
        assert await temp_store.list_kinds("missing") == []
        assert await temp_store.exists("b-session", "similarity")
        assert not await temp_store.exists("b-session", "drift")

    @pytest.mark.asyncio
    async def test_stats(self, temp_store: HistoryStore, events, constant_profile) -> None:
        await temp_store.write_drift("session-1", events)
        await temp_store.write_baseline("session-1", constant_profile)

        stats = await temp_store.get_stats("session-1")
        assert stats["kinds"] == 2
        assert stats["total_files"] == 2
        assert stats["size_bytes"] > 0
        assert stats["baseline_versions"] == [1]

    @pytest.mark.asyncio
    async def test_stats_empty(self, temp_store: HistoryStore) -> None:
        stats = await temp_store.get_stats("nothing")
        assert stats == {"kinds": 0, "total_files": 0, "size_bytes": 0, "baseline_versions": []}
