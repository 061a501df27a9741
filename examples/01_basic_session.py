"""Example 1: Basic Session

This example shows the most basic usage of CADENCE:
building a baseline for one subject and scoring live samples against it.

For demonstration purposes, this uses synthetic data.
In production, vectors come from the feature extractors.
"""

import json
from datetime import datetime, timedelta, timezone

import numpy as np

from cadence.config import Settings
from cadence.features import FEATURE_COUNTS, MODALITIES, FeatureVector
from cadence.features.schema import physical_ranges
from cadence.pipeline import Monitor


def generate_synthetic_vector(rng: np.random.Generator, timestamp: datetime, shift: float = 0.0) -> FeatureVector:
    """Generate one synthetic multi-modal vector.

    Every slot is drawn 30% into its physical range (generic slots around
    0.3). Dwell time sits around 80 ms and moves by ``shift`` ms.
    """
    ranges = physical_ranges((0.0, 1.0))
    values = {}
    for modality in MODALITIES:
        low, high = ranges[modality]
        center = low + 0.3 * (high - low)
        noise = 1.0 + 0.01 * rng.standard_normal(FEATURE_COUNTS[modality])
        values[modality] = center * noise
    values["typing"][0] = 80.0 + shift + 3.0 * rng.standard_normal()
    return FeatureVector(
        values={m: tuple(v) for m, v in values.items()},
        timestamp=timestamp,
    )


def main():
    """Run basic session example."""
    print("=" * 60)
    print("CADENCE: Example 1: Basic Session")
    print("=" * 60)
    print()

    rng = np.random.default_rng(0)
    start = datetime.now(timezone.utc)
    monitor = Monitor.from_settings(Settings())

    # Step 1: Baseline phase
    print("Step 1: Collecting baseline (240 samples, one per second)...")
    monitor.start_baseline()
    for k in range(240):
        monitor.ingest(generate_synthetic_vector(rng, start + timedelta(seconds=k)))

    profile = monitor.finalize_baseline()
    if profile is None:
        print(f"  ✗ Baseline not ready: {monitor.baseline_shortfalls()}")
        return
    print(f"  ✓ Baseline v{profile.version}: {profile.statistics.sample_count} samples, "
          f"confidence {profile.statistics.confidence:.2f}")
    print()

    # Step 2: Live phase, dwell time slowly lengthening
    print("Step 2: Scoring 20 live samples with a growing dwell shift...")
    outcome = None
    for k in range(20):
        ts = start + timedelta(minutes=10 + k)
        outcome = monitor.ingest(generate_synthetic_vector(rng, ts, shift=4.0 * k))
        r = outcome.similarity
        flag = f"  drift event: {outcome.drift_event.drift_severity.value}" if outcome.drift_event else ""
        print(f"  {ts:%H:%M} similarity={r.overall:.2f} confidence={r.confidence:.2f}{flag}")
    print()

    # Step 3: Attribution of the last sample
    print("Step 3: Attributing the last sample to modalities...")
    last = generate_synthetic_vector(rng, start + timedelta(minutes=30), shift=80.0)
    attributions = monitor.attribute(last)
    for a in attributions:
        print(f"  {a.group}: {a.contribution:+.2f}")
    print()

    # Step 4: Report
    report = monitor.report(outcome, attributions, label="example")
    print("=" * 60)
    print("DIAGNOSTIC REPORT")
    print("=" * 60)
    print()
    print(report.format_full())
    print()

    # Step 5: Sanitized snapshot (JSON)
    print("=" * 60)
    print("SANITIZED SNAPSHOT (for external consumers)")
    print("=" * 60)
    print()
    print(json.dumps(monitor.snapshot(attributions).model_dump(mode="json"), indent=2))

    monitor.close()


if __name__ == '__main__':
    main()
