"""Parquet export of engine histories and baselines.

Write-once storage in columnar Parquet format, one directory per session.

Storage structure:
    {base}/{session}/{kind}.parquet

Example:
    exports/session-1/similarity.parquet
    exports/session-1/drift.parquet
    exports/session-1/baseline_v1.parquet

All I/O operations are async-compatible using asyncio.to_thread for non-blocking
execution.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Sequence

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from cadence.engine.baseline import BaselineProfile
from cadence.engine.drift import DriftEvent
from cadence.engine.similarity import SimilarityResult

logger = logging.getLogger(__name__)

_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def similarity_frame(results: Sequence[SimilarityResult]) -> pd.DataFrame:
    """One row per similarity result (aggregates only)."""
    return pd.DataFrame([
        {
            "timestamp": r.timestamp,
            "overall": r.overall,
            "confidence": r.confidence,
            "coverage": r.coverage,
            "inconclusive": r.inconclusive,
            "ensemble_available": r.ensemble_available,
            "baseline_version": r.baseline_version,
            "vector_outlier_score": r.vector_outlier_score,
            "anomaly_count": len(r.anomalies),
        }
        for r in results
    ])


def drift_frame(events: Sequence[DriftEvent]) -> pd.DataFrame:
    """One row per drift event."""
    rows = []
    for e in events:
        row = e.to_dict()
        row["detected_at"] = e.detected_at
        row["recommended_actions"] = "; ".join(e.recommended_actions)
        row["affected_modalities"] = "; ".join(e.affected_modalities)
        row["primary_features"] = "; ".join(e.primary_features)
        metrics = row.pop("stability_metrics")
        for name, value in metrics.items():
            row[f"stability_{name}"] = value
        rows.append(row)
    return pd.DataFrame(rows)


class HistoryStore:
    """Async Parquet store for exported histories.

    Never overwrites an existing file unless explicitly asked to.

    Args:
        base_path: Root directory for exports. Defaults to 'exports/'.
    """

    def __init__(self, base_path: str | Path = "exports") -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _session_dir(self, session: str) -> Path:
        if not _NAME.match(session):
            raise ValueError(f"Invalid name for export path: '{session}'")
        return self.base_path / session

    def _get_file_path(self, session: str, kind: str) -> Path:
        """Generate the file path for a session/kind pair.

        Raises:
            ValueError: If a name is empty or contains path separators
        """
        if not _NAME.match(kind):
            raise ValueError(f"Invalid name for export path: '{kind}'")
        return self._session_dir(session) / f"{kind}.parquet"

    async def write(
        self,
        session: str,
        kind: str,
        data: pd.DataFrame,
        overwrite: bool = False,
    ) -> Path:
        """Write a DataFrame to the store.

        Args:
            session: Session identifier
            kind: Export kind (e.g. "similarity", "drift", "baseline_v1")
            data: DataFrame to store
            overwrite: If False (default), raises error if file exists.

        Returns:
            Path to the written file

        Raises:
            FileExistsError: If file exists and overwrite=False
            ValueError: If data is empty
        """
        if data.empty:
            raise ValueError("Cannot write empty DataFrame to store")

        file_path = self._get_file_path(session, kind)

        if file_path.exists() and not overwrite:
            raise FileExistsError(
                f"Export file already exists: {file_path}. "
                "Use overwrite=True to replace."
            )

        file_path.parent.mkdir(parents=True, exist_ok=True)

        def _write() -> None:
            table = pa.Table.from_pandas(data, preserve_index=False)
            pq.write_table(
                table,
                file_path,
                compression="snappy",
                use_dictionary=True,
                write_statistics=True,
            )

        await asyncio.to_thread(_write)
        logger.debug("Wrote %d rows to %s", len(data), file_path)
        return file_path

    async def read(self, session: str, kind: str) -> pd.DataFrame | None:
        """Read one export.

        Returns:
            DataFrame if the file exists and is readable, None otherwise
        """
        file_path = self._get_file_path(session, kind)

        if not file_path.exists():
            return None

        def _read() -> pd.DataFrame | None:
            try:
                return pq.read_table(file_path).to_pandas()
            except (OSError, pa.ArrowInvalid) as e:
                logger.warning(
                    "Failed to read export file %s: %s. "
                    "File may be corrupted, returning None.",
                    file_path, e,
                )
                return None

        return await asyncio.to_thread(_read)

    async def write_similarity(
        self,
        session: str,
        results: Sequence[SimilarityResult],
        overwrite: bool = False,
    ) -> Path:
        return await self.write(session, "similarity", similarity_frame(results), overwrite)

    async def write_drift(
        self,
        session: str,
        events: Sequence[DriftEvent],
        overwrite: bool = False,
    ) -> Path:
        return await self.write(session, "drift", drift_frame(events), overwrite)

    async def write_baseline(
        self,
        session: str,
        profile: BaselineProfile,
        overwrite: bool = False,
    ) -> Path:
        """Export per-feature baseline statistics as ``baseline_v{version}``."""
        return await self.write(
            session, f"baseline_v{profile.version}", profile.to_frame(), overwrite
        )

    async def exists(self, session: str, kind: str) -> bool:
        file_path = self._get_file_path(session, kind)
        return await asyncio.to_thread(file_path.exists)

    async def list_kinds(self, session: str) -> list[str]:
        """List export kinds stored for a session (sorted)."""
        session_dir = self._session_dir(session)

        if not session_dir.exists():
            return []

        def _list() -> list[str]:
            return sorted(p.stem for p in session_dir.glob("*.parquet"))

        return await asyncio.to_thread(_list)

    async def list_sessions(self) -> list[str]:
        def _list() -> list[str]:
            return sorted(p.name for p in self.base_path.iterdir() if p.is_dir())

        return await asyncio.to_thread(_list)

    async def get_stats(self, session: str) -> dict[str, Any]:
        """Get export statistics for a session.

        Returns:
            Dictionary with:
                - kinds: Number of export kinds
                - total_files: Total number of parquet files
                - size_bytes: Total size on disk
                - baseline_versions: Sorted exported baseline versions
        """
        session_dir = self._session_dir(session)

        if not session_dir.exists():
            return {
                "kinds": 0,
                "total_files": 0,
                "size_bytes": 0,
                "baseline_versions": [],
            }

        def _stats() -> dict[str, Any]:
            files = list(session_dir.glob("*.parquet"))
            versions = []
            for f in files:
                if f.stem.startswith("baseline_v"):
                    try:
                        versions.append(int(f.stem[len("baseline_v"):]))
                    except ValueError:
                        continue
            return {
                "kinds": len({f.stem for f in files}),
                "total_files": len(files),
                "size_bytes": sum(f.stat().st_size for f in files),
                "baseline_versions": sorted(versions),
            }

        return await asyncio.to_thread(_stats)
