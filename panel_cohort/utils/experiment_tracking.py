"""
Experiment tracking utilities using MLflow.

Tracking is a side channel: every logging call degrades to a warning on
failure so a tracking-server problem never aborts a cohort build.
"""

import contextlib
import logging
import time
from typing import Any, Dict, Optional

import mlflow
import pandas as pd

logger = logging.getLogger(__name__)


class ExperimentTracker:
    """MLflow experiment tracking wrapper."""

    def __init__(self, mlflow_config: Dict[str, Any]):
        """Initialize experiment tracker from the ``mlflow`` config section."""
        self.enabled = mlflow_config.get('enabled', True)
        self.tracking_uri = mlflow_config.get('tracking_uri', 'file:./mlruns')
        self.experiment_name = mlflow_config.get('experiment_name', 'panel_cohort')

        if not self.enabled:
            logger.info("MLflow tracking disabled")
            return

        mlflow.set_tracking_uri(self.tracking_uri)

        experiment = mlflow.get_experiment_by_name(self.experiment_name)
        if experiment is not None and experiment.lifecycle_stage == "deleted":
            # A deleted experiment keeps its name reserved
            self.experiment_name = f"{self.experiment_name}_{int(time.time())}"
            logger.info(f"Experiment was deleted; logging to {self.experiment_name}")
        mlflow.set_experiment(self.experiment_name)

    def start_run(self, run_name: Optional[str] = None):
        """Start an MLflow run (a no-op context when tracking is disabled)."""
        if not self.enabled:
            return contextlib.nullcontext()
        return mlflow.start_run(run_name=run_name)

    def log_params(self, params: Dict[str, Any], prefix: str = ""):
        """Log a nested parameter dict, flattened to dotted keys."""
        if not self.enabled:
            return
        for key, value in self._flatten_dict(params, prefix).items():
            try:
                mlflow.log_param(key, value)
            except Exception as e:
                logger.warning(f"Failed to log param {key}: {e}")

    def log_metrics(self, metrics: Dict[str, Any], step: Optional[int] = None):
        """Log numeric metrics; None values (undefined metrics) are skipped."""
        if not self.enabled:
            return
        for key, value in metrics.items():
            if value is None or isinstance(value, (bool, str)):
                continue
            try:
                mlflow.log_metric(key, value, step=step)
            except Exception as e:
                logger.warning(f"Failed to log metric {key}: {e}")

    def log_sweep(self, sweep_table: pd.DataFrame):
        """Log precision/recall/F1 per threshold, stepped by threshold in hundredths."""
        if not self.enabled:
            return
        for _, row in sweep_table.iterrows():
            step = int(round(row['threshold'] * 100))
            self.log_metrics({
                'sweep_precision': float(row['precision']),
                'sweep_recall': float(row['recall']),
                'sweep_f1': float(row['f1']),
            }, step=step)

    def log_dict(self, dictionary: Dict[str, Any], artifact_file: str):
        """Log dictionary as a YAML/JSON artifact."""
        if not self.enabled:
            return
        try:
            mlflow.log_dict(dictionary, artifact_file)
            logger.info(f"Dictionary logged as {artifact_file}")
        except Exception as e:
            logger.warning(f"Failed to log dictionary to MLflow: {e}")

    def log_artifacts(self, artifact_path: str):
        """Log a local directory as run artifacts."""
        if not self.enabled:
            return
        try:
            mlflow.log_artifacts(artifact_path)
        except Exception as e:
            logger.warning(f"Failed to log artifacts: {e}")

    def _flatten_dict(self, d: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
        """Flatten nested dictionary for parameter logging."""
        items = []

        for key, value in d.items():
            new_key = f"{prefix}.{key}" if prefix else key

            if isinstance(value, dict):
                items.extend(self._flatten_dict(value, new_key).items())
            else:
                # MLflow params are strings
                items.append((new_key, str(value)))

        return dict(items)
