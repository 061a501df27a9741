"""CADENCE: single-subject behavioral telemetry engine.

Compares live multi-modal behavior (typing, voice, motor, temporal features)
against the subject's own baseline: similarity, per-feature anomalies, drift
classification and group attribution. Outputs describe deviation only; they
make no diagnostic claim.
"""

__version__ = "0.3.0"
