"""Configuration management for CADENCE.

Loads engine tunables from environment variables (prefix ``CADENCE_``) using
Pydantic. The resulting object is frozen: components receive it (or values
taken from it) at construction time and never read ambient state.

Usage:
    from cadence.config import Settings

    settings = Settings()
    print(settings.anomaly_threshold)
    monitor = Monitor.from_settings(settings)
"""

from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """CADENCE configuration from environment variables.

    Loads from .env file automatically. Validates on instantiation.
    None of the thresholds encode validated clinical cutoffs; they are
    tunable defaults.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR)
        baseline_min_samples: Minimum accumulated vectors for a baseline
        baseline_min_duration_s: Minimum wall-clock span of the baseline phase
        baseline_min_active_ratio: Minimum fraction of the span with activity
        normalization_method: 'zscore', 'minmax' or 'robust'
        anomaly_threshold: Rescaled deviation above which a feature is anomalous
        drift_window: Number of similarity results in the drift window
        drift_actions: Recommended-action table (None: built-in defaults)
    """

    model_config = SettingsConfigDict(
        env_prefix="CADENCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # System Settings
    log_level: str = Field(default="INFO", description="Logging level")

    # Baseline phase
    baseline_min_samples: int = Field(default=200, ge=2, description="Minimum baseline samples")
    baseline_min_duration_s: float = Field(
        default=120.0, ge=0.0, description="Minimum baseline duration (seconds)"
    )
    baseline_min_active_ratio: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Minimum active-time ratio"
    )
    baseline_max_idle_gap_s: float = Field(
        default=15.0, gt=0.0, description="Largest sample gap still counted as active time"
    )
    baseline_reference_size: int = Field(
        default=256, ge=16, description="Trailing samples retained as reference"
    )
    baseline_stability_window: int = Field(
        default=50, ge=2, description="Trailing samples used for the stability estimate"
    )
    baseline_min_quality: float = Field(
        default=0.6, ge=0.0, le=1.0, description="Vectors below this quality skip the baseline"
    )
    baseline_change_threshold: float = Field(
        default=0.2, gt=0.0, description="Relative mean change reported on baseline adoption"
    )

    # Similarity scoring
    normalization_method: str = Field(default="zscore", description="Normalization method")
    variance_floor: float = Field(default=0.01, gt=0.0, le=1.0, description="Variance floor")
    anomaly_threshold: float = Field(default=0.65, gt=0.0, lt=1.0)
    outlier_threshold: float = Field(default=0.7, gt=0.0, le=1.0)
    outlier_min_deviation: float = Field(default=0.5, ge=0.0, lt=1.0)
    inconclusive_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    min_feature_samples: int = Field(default=20, ge=1)
    severity_medium: float = Field(default=0.75, gt=0.0, lt=1.0)
    severity_high: float = Field(default=0.9, gt=0.0, lt=1.0)
    staleness_horizon_s: float = Field(default=60.0, gt=0.0)
    weight_typing: float = Field(default=0.35, ge=0.0)
    weight_voice: float = Field(default=0.20, ge=0.0)
    weight_motor: float = Field(default=0.30, ge=0.0)
    weight_temporal: float = Field(default=0.15, ge=0.0)

    # Isolation ensemble
    ensemble_trees: int = Field(default=50, ge=10, le=200)
    ensemble_subsample: int = Field(default=64, ge=8, le=256)
    feature_trees: int = Field(default=16, ge=1, le=200)
    ensemble_min_reference: int = Field(default=16, ge=2)
    random_seed: int = Field(default=7, description="Seed for ensembles and attribution")

    # Drift detection
    drift_window: int = Field(default=10, ge=4)
    drift_min_samples: int = Field(default=4, ge=2)
    drift_mild: float = Field(default=0.10, gt=0.0, le=1.0)
    drift_moderate: float = Field(default=0.20, gt=0.0, le=1.0)
    drift_severe: float = Field(default=0.35, gt=0.0, le=1.0)
    drift_abrupt_rate: float = Field(default=2.0, gt=0.0, description="Magnitude per day")
    drift_recovery_samples: int = Field(default=3, ge=1)
    drift_abrupt_concentration: float = Field(default=0.6, gt=0.0, le=1.0)
    drift_abrupt_span: int = Field(default=2, ge=1)
    drift_min_rate_interval_s: float = Field(default=3600.0, gt=0.0)
    drift_actions: Optional[dict[str, tuple[str, ...]]] = Field(
        default=None, description="Recommended actions keyed \"severity:type\" or \"severity\""
    )

    # Retention
    similarity_history_limit: int = Field(default=500, ge=1)
    drift_history_limit: int = Field(default=100, ge=1)
    confidence_history_limit: int = Field(default=500, ge=1)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid:
            raise ValueError(f"log_level must be one of {valid}, got {v}")
        return v_upper

    @field_validator("normalization_method")
    @classmethod
    def validate_normalization_method(cls, v: str) -> str:
        """Ensure normalization method is known."""
        v_lower = v.lower()
        if v_lower not in {"zscore", "minmax", "robust"}:
            raise ValueError(
                f"normalization_method must be 'zscore', 'minmax' or 'robust', got '{v}'"
            )
        return v_lower

    @model_validator(mode="after")
    def validate_ordering(self) -> "Settings":
        """Ensure paired thresholds are ordered."""
        if not self.drift_mild < self.drift_moderate < self.drift_severe:
            raise ValueError("drift thresholds must satisfy mild < moderate < severe")
        if self.severity_medium >= self.severity_high:
            raise ValueError("severity_medium must be below severity_high")
        if self.drift_min_samples > self.drift_window:
            raise ValueError("drift_min_samples cannot exceed drift_window")
        return self

    @classmethod
    def defaults(cls) -> "Settings":
        """Built-in defaults only, without reading the environment or .env."""
        return cls.model_construct()

    @property
    def modality_weights(self) -> dict[str, float]:
        """Per-modality weights keyed by modality name."""
        return {
            "typing": self.weight_typing,
            "voice": self.weight_voice,
            "motor": self.weight_motor,
            "temporal": self.weight_temporal,
        }
