"""
Model utilities for threshold sweeps and held-out evaluation.
"""

import numpy as np
import pandas as pd
from typing import Any, Dict, Optional, Sequence
from sklearn.metrics import (
    accuracy_score, average_precision_score, confusion_matrix,
    precision_recall_fscore_support, roc_auc_score
)
import logging

logger = logging.getLogger(__name__)

SWEEP_COLUMNS = ['threshold', 'precision', 'recall', 'f1', 'tp', 'fp', 'fn', 'tn', 'degenerate']


def threshold_grid(start: float = 0.10, stop: float = 0.90, step: float = 0.05) -> np.ndarray:
    """Inclusive, rounded threshold grid (default 0.10, 0.15, ..., 0.90)."""
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    n_steps = int(round((stop - start) / step))
    return np.round(start + step * np.arange(n_steps + 1), 10)


def _validate_inputs(scores: Sequence[float], labels: Sequence[int]):
    y_proba = np.asarray(scores, dtype=float)
    y_true = np.asarray(labels)
    if y_proba.ndim != 1 or y_true.ndim != 1:
        raise ValueError("scores and labels must be one-dimensional")
    if len(y_proba) != len(y_true):
        raise ValueError(f"scores and labels differ in length: {len(y_proba)} vs {len(y_true)}")
    if len(y_proba) == 0:
        raise ValueError("Cannot evaluate an empty score vector")
    if np.isnan(y_proba).any() or (y_proba < 0).any() or (y_proba > 1).any():
        raise ValueError("scores must be probabilities in [0, 1]")
    if not np.isin(y_true, [0, 1]).all():
        raise ValueError("labels must be binary (0/1)")
    return y_proba, y_true.astype(int)


class ThresholdSweepEvaluator:
    """Score predicted probabilities over a grid of decision thresholds.

    A record is predicted positive iff ``score >= threshold``. Precision,
    recall and F1 refer to the positive class. Degenerate points (no
    predicted positives, no true positives) report 0 rather than NaN, so the
    sweep stays totally ordered by F1.
    """

    def __init__(self, thresholds: Optional[Sequence[float]] = None):
        """
        Args:
            thresholds: Decision thresholds; defaults to 0.10..0.90 step 0.05
        """
        self.thresholds = threshold_grid() if thresholds is None else np.asarray(thresholds, dtype=float)

    @classmethod
    def from_config(cls, threshold_config: Dict[str, Any]) -> 'ThresholdSweepEvaluator':
        if threshold_config.get('grid'):
            return cls(threshold_config['grid'])
        return cls(threshold_grid(
            start=float(threshold_config.get('start', 0.10)),
            stop=float(threshold_config.get('stop', 0.90)),
            step=float(threshold_config.get('step', 0.05)),
        ))

    def sweep(self, scores: Sequence[float], labels: Sequence[int],
              thresholds: Optional[Sequence[float]] = None) -> pd.DataFrame:
        """
        Evaluate every threshold.

        Args:
            scores: Predicted probabilities of the positive class
            labels: Ground-truth binary labels
            thresholds: Overrides the instance grid

        Returns:
            One row per threshold, ascending, with columns
            threshold, precision, recall, f1, tp, fp, fn, tn, degenerate
        """
        y_proba, y_true = _validate_inputs(scores, labels)
        grid = np.sort(np.asarray(self.thresholds if thresholds is None else thresholds, dtype=float))

        rows = []
        for threshold in grid:
            y_pred = (y_proba >= threshold).astype(int)
            precision, recall, f1, _ = precision_recall_fscore_support(
                y_true, y_pred, labels=[1], average=None, zero_division=0
            )
            tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel()
            precision, recall, f1 = float(precision[0]), float(recall[0]), float(f1[0])
            rows.append({
                'threshold': float(threshold),
                'precision': precision,
                'recall': recall,
                'f1': f1,
                'tp': int(tp),
                'fp': int(fp),
                'fn': int(fn),
                'tn': int(tn),
                'degenerate': precision + recall == 0,
            })

        table = pd.DataFrame(rows, columns=SWEEP_COLUMNS)
        n_degenerate = int(table['degenerate'].sum())
        if n_degenerate:
            logger.info(f"{n_degenerate}/{len(table)} thresholds have precision+recall=0 (F1 set to 0)")
        return table

    @staticmethod
    def best(table: pd.DataFrame) -> pd.Series:
        """Row with the highest F1; ties go to the lowest threshold."""
        if table.empty:
            raise ValueError("Cannot select a threshold from an empty sweep")
        ordered = table.sort_values('threshold', kind='mergesort').reset_index(drop=True)
        best_row = ordered.loc[ordered['f1'].idxmax()]
        logger.info(f"Optimal threshold for F1: {best_row['threshold']:.2f} (F1: {best_row['f1']:.3f}, "
                    f"precision: {best_row['precision']:.3f}, recall: {best_row['recall']:.3f})")
        return best_row

    def optimize(self, scores: Sequence[float], labels: Sequence[int]) -> float:
        """Convenience: sweep and return the arg-max-F1 threshold."""
        return float(self.best(self.sweep(scores, labels))['threshold'])


class ModelEvaluator:
    """Held-out evaluation at a chosen operating point."""

    def calculate_metrics(self,
                          y_true: np.ndarray,
                          y_proba: np.ndarray,
                          threshold: float) -> Dict[str, Any]:
        """
        Calculate evaluation metrics at ``threshold``.

        ROC-AUC and PR-AUC are None when the labels hold a single class.
        """
        y_proba, y_true = _validate_inputs(y_proba, y_true)
        y_pred = (y_proba >= threshold).astype(int)

        precision, recall, f1, _ = precision_recall_fscore_support(
            y_true, y_pred, labels=[1], average=None, zero_division=0
        )
        tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel()

        metrics: Dict[str, Any] = {
            'threshold': float(threshold),
            'accuracy': float(accuracy_score(y_true, y_pred)),
            'precision': float(precision[0]),
            'recall': float(recall[0]),
            'f1_score': float(f1[0]),
            'true_negatives': int(tn),
            'false_positives': int(fp),
            'false_negatives': int(fn),
            'true_positives': int(tp),
            'specificity': float(tn / (tn + fp)) if (tn + fp) > 0 else 0.0,
            'sensitivity': float(tp / (tp + fn)) if (tp + fn) > 0 else 0.0,
            'prevalence': float(y_true.mean()),
            'n_samples': int(len(y_true)),
        }

        if len(np.unique(y_true)) == 2:
            metrics['roc_auc'] = float(roc_auc_score(y_true, y_proba))
            metrics['pr_auc'] = float(average_precision_score(y_true, y_proba))
        else:
            logger.warning("Held-out labels contain a single class; ROC-AUC and PR-AUC are undefined")
            metrics['roc_auc'] = None
            metrics['pr_auc'] = None

        return metrics
