"""
Detection Configuration — per-organization thresholds, weights and windows.

Stored in the organization's settings blob under ``varianceDetection`` using
the camelCase keys written by the settings screen:

    {
        "lowThreshold": 0.1, "mediumThreshold": 0.2,
        "highThreshold": 0.3, "criticalThreshold": 0.5,
        "analysisWindowHours": 24, "minimumSalesForAnalysis": 0,
        "posSalesWeight": 0.4, "rfidScanWeight": 0.4, "historicalPatternWeight": 0.2,
        "enableAnomalyDetection": true, "anomalySensitivity": 0.5
    }

Thresholds are fractions of expected quantity. Weights are not required to
sum to 1.0; confidence scores are capped at 1.0 instead.
"""

from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator

from variance.errors import ConfigurationError

SETTINGS_KEY = "varianceDetection"


class DetectionConfig(BaseModel):
    """Immutable detection parameters for one organization."""

    low_threshold: float = Field(
        0.1,
        gt=0,
        validation_alias=AliasChoices("low_threshold", "lowThreshold"),
        serialization_alias="lowThreshold",
    )
    medium_threshold: float = Field(
        0.2,
        gt=0,
        validation_alias=AliasChoices("medium_threshold", "mediumThreshold"),
        serialization_alias="mediumThreshold",
    )
    high_threshold: float = Field(
        0.3,
        gt=0,
        validation_alias=AliasChoices("high_threshold", "highThreshold"),
        serialization_alias="highThreshold",
    )
    critical_threshold: float = Field(
        0.5,
        gt=0,
        validation_alias=AliasChoices("critical_threshold", "criticalThreshold"),
        serialization_alias="criticalThreshold",
    )
    analysis_window_hours: int = Field(
        24,
        gt=0,
        validation_alias=AliasChoices("analysis_window_hours", "analysisWindowHours"),
        serialization_alias="analysisWindowHours",
    )
    minimum_sales_for_analysis: int = Field(
        0,
        ge=0,
        validation_alias=AliasChoices("minimum_sales_for_analysis", "minimumSalesForAnalysis"),
        serialization_alias="minimumSalesForAnalysis",
    )
    pos_weight: float = Field(
        0.4,
        ge=0,
        validation_alias=AliasChoices("pos_weight", "posSalesWeight", "posWeight"),
        serialization_alias="posSalesWeight",
    )
    rfid_weight: float = Field(
        0.4,
        ge=0,
        validation_alias=AliasChoices("rfid_weight", "rfidScanWeight", "rfidWeight"),
        serialization_alias="rfidScanWeight",
    )
    history_weight: float = Field(
        0.2,
        ge=0,
        validation_alias=AliasChoices("history_weight", "historicalPatternWeight", "historyWeight"),
        serialization_alias="historicalPatternWeight",
    )
    enable_anomaly_detection: bool = Field(
        True,
        validation_alias=AliasChoices("enable_anomaly_detection", "enableAnomalyDetection"),
        serialization_alias="enableAnomalyDetection",
    )
    anomaly_sensitivity: float = Field(
        0.5,
        ge=0,
        le=1,
        validation_alias=AliasChoices("anomaly_sensitivity", "anomalySensitivity"),
        serialization_alias="anomalySensitivity",
    )

    model_config = {"frozen": True, "extra": "ignore"}

    @model_validator(mode="after")
    def _thresholds_ascending(self) -> "DetectionConfig":
        tiers = self.thresholds
        if not all(lower < upper for lower, upper in zip(tiers, tiers[1:])):
            raise ValueError(
                "severity thresholds must be strictly increasing: "
                f"low={self.low_threshold} medium={self.medium_threshold} "
                f"high={self.high_threshold} critical={self.critical_threshold}"
            )
        return self

    @property
    def thresholds(self) -> tuple[float, float, float, float]:
        return (self.low_threshold, self.medium_threshold, self.high_threshold, self.critical_threshold)

    def to_settings(self) -> dict[str, Any]:
        """Serialize to the stored camelCase form."""
        return self.model_dump(by_alias=True)


def get_default_config() -> DetectionConfig:
    """
    Default detection configuration used when an organization has none stored.

    The acceptance floor (0.6) and the materiality floor (0.1 units) are not
    part of it: they are deployment-wide ``Settings.variance_acceptance_floor``
    and ``Settings.variance_materiality_floor`` in ``core.config``.
    """
    return DetectionConfig()


def load_detection_config(blob: dict[str, Any] | None) -> DetectionConfig:
    """
    Parse a stored ``varianceDetection`` blob.

    Missing keys take their defaults. Raises ConfigurationError if the blob
    breaks an invariant (non-ascending thresholds, negative weights, ...).
    """
    if not blob:
        return get_default_config()
    if not isinstance(blob, dict):
        raise ConfigurationError(f"variance config must be a mapping, got {type(blob).__name__}")
    try:
        return DetectionConfig.model_validate(blob)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
