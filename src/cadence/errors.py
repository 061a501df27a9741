"""Error taxonomy for the CADENCE engine.

Components raise these; the Monitor catches them and degrades to a
well-defined "not enough information yet" output.
"""


class CadenceError(Exception):
    """Base class for all engine errors."""


class InsufficientData(CadenceError):
    """Baseline not finalizable, or too little data to compare.

    Attributes:
        reasons: Human-readable reasons, e.g. "samples 12 < 200"
    """

    def __init__(self, reasons: list[str] | str) -> None:
        if isinstance(reasons, str):
            reasons = [reasons]
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons) or "insufficient data")


class InvalidFeatureVector(CadenceError):
    """Malformed or out-of-range input vector. The vector is discarded."""


class ModelUnavailable(CadenceError):
    """Isolation ensemble not built yet (or too few reference points)."""
