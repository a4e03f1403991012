"""Pydantic schemas for the threshold learner's persistence contract."""

from pydantic import BaseModel, Field


class ConfidenceThresholdSchema(BaseModel):
    allow: float
    warn: float


class AccuracyThresholdSchema(BaseModel):
    excellent: float
    good: float
    acceptable: float


class ThresholdConfigSchema(BaseModel):
    confidence_threshold: ConfidenceThresholdSchema
    accuracy_threshold: AccuracyThresholdSchema
    radius_multiplier: float = 1.0


class RegionalPatternSchema(BaseModel):
    store_id: str
    avg_accuracy: float
    avg_confidence: float
    success_rate: float
    peak_hours: list[int] = Field(default_factory=list)
    optimal_radius: float = 120.0


class LearnerSnapshot(BaseModel):
    config: ThresholdConfigSchema
    patterns: list[RegionalPatternSchema] = Field(default_factory=list)
    data_size: int = 0
