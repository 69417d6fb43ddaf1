"""Utility modules for the cohort pipeline."""

from .config import DEFAULT_CONFIG, load_config
from .experiment_tracking import ExperimentTracker
from .model_utils import (
    ThresholdSweepEvaluator,
    ModelEvaluator,
    threshold_grid
)

__all__ = [
    'DEFAULT_CONFIG',
    'load_config',
    'ExperimentTracker',
    'ThresholdSweepEvaluator',
    'ModelEvaluator',
    'threshold_grid'
]
