"""
Panel Cohort Pipeline

Builds a labeled, leakage-free modeling table from a longitudinal survey
panel: sentinel recoding, composite indices, institutionalisation labels
with post-event truncation, subject-level splits, temporal features and a
threshold sweep over held-out predictions.
"""

__version__ = "1.0.0"

from .data_generation import SurveyDataGenerator
from .pipeline import (
    SurveyRecoder,
    RecodingTable,
    CompositeIndexBuilder,
    CohortLabeler,
    ParticipantSplitter,
    TemporalFeatureEngineer,
    MissingValueHandler,
    DataValidator
)
from .utils import (
    ExperimentTracker,
    ThresholdSweepEvaluator,
    ModelEvaluator,
    load_config
)

__all__ = [
    'SurveyDataGenerator',
    'SurveyRecoder',
    'RecodingTable',
    'CompositeIndexBuilder',
    'CohortLabeler',
    'ParticipantSplitter',
    'TemporalFeatureEngineer',
    'MissingValueHandler',
    'DataValidator',
    'ExperimentTracker',
    'ThresholdSweepEvaluator',
    'ModelEvaluator',
    'load_config'
]
