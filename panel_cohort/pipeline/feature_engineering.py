"""
Temporal Feature Engineering

This module derives per-subject temporal features from the cohort table:
lag-1 values, causal running means and pairwise interaction terms.
Rows are streamed in (subject, round) order and every statistic is folded
with state kept per subject, so no value can cross a subject boundary and no
value can look ahead to a later round.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin

from .recoding import ABSENT, is_absent

logger = logging.getLogger(__name__)

LAG_PREFIX = 'lag_'
CUMULATIVE_PREFIX = 'cumulative_mean_'
INTERACTION_PREFIX = 'interaction_'


def lag1(feature_sequence: Sequence) -> List:
    """Shift a single subject's sequence by one round; the first value is undefined."""
    values = list(feature_sequence)
    if not values:
        return []
    return [ABSENT] + values[:-1]


def cumulative_mean(feature_sequence: Sequence) -> List[float]:
    """Running mean of the present values up to and including each position."""
    out = []
    total, count = 0.0, 0
    for value in feature_sequence:
        if not is_absent(value):
            total += value
            count += 1
        out.append(total / count if count else ABSENT)
    return out


def interaction(a_sequence: Sequence, b_sequence: Sequence) -> List:
    """Elementwise product; absent if either side is absent."""
    if len(a_sequence) != len(b_sequence):
        raise ValueError(f"Interaction sequences differ in length: {len(a_sequence)} vs {len(b_sequence)}")
    return [ABSENT if is_absent(a) or is_absent(b) else a * b
            for a, b in zip(a_sequence, b_sequence)]


def interaction_column(a: str, b: str) -> str:
    return f'{INTERACTION_PREFIX}{a}_x_{b}'


def trim_last_k(df: pd.DataFrame, k: Optional[int], subject_col: str = 'subject_id',
                round_col: str = 'round') -> pd.DataFrame:
    """Keep each subject's ``k`` most recent rounds (all rounds if ``k`` is None)."""
    df_sorted = df.sort_values([subject_col, round_col])
    if k is None:
        return df_sorted
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    trimmed = df_sorted.groupby(subject_col, sort=False).tail(k)
    logger.info(f"Trimmed to last {k} rounds per subject: {len(df_sorted)} -> {len(trimmed)} rows")
    return trimmed


@dataclass
class _SubjectState:
    previous: Dict[str, Any] = field(default_factory=dict)
    sums: Dict[str, float] = field(default_factory=dict)
    counts: Dict[str, int] = field(default_factory=dict)
    last_round: Any = None


class TemporalFeatureEngineer(BaseEstimator, TransformerMixin):
    """Create lag, cumulative-mean and interaction features per subject."""

    def __init__(self,
                 base_features: Optional[List[str]] = None,
                 lag_features: Optional[List[str]] = None,
                 cumulative_features: Optional[List[str]] = None,
                 interaction_pairs: Optional[List[Tuple[str, str]]] = None,
                 drop_incomplete: bool = True,
                 subject_col: str = 'subject_id',
                 round_col: str = 'round'):
        """
        Initialize temporal feature engineer.

        Args:
            base_features: Current-round model features; defaults to every composite flag and count
            lag_features: Features to lag by one round; defaults to base features plus interactions
            cumulative_features: Signals to summarise with a causal running mean
            interaction_pairs: Feature pairs multiplied elementwise before lagging
            drop_incomplete: Drop rows without a prior observation (each subject's first round)
        """
        self.base_features = base_features
        self.lag_features = lag_features
        self.cumulative_features = cumulative_features
        self.interaction_pairs = interaction_pairs
        self.drop_incomplete = drop_incomplete
        self.subject_col = subject_col
        self.round_col = round_col
        self.feature_columns_ = []

    def fit(self, X: pd.DataFrame, y=None):
        """Resolve the feature lists against the training frame."""
        if self.base_features:
            self.base_features_ = list(self.base_features)
        else:
            self.base_features_ = [c for c in X.columns
                                   if c.endswith('_flag') or c.endswith('_count')]

        self.interaction_pairs_ = [tuple(pair) for pair in (self.interaction_pairs or [])]
        for a, b in self.interaction_pairs_:
            for name in (a, b):
                if name not in X.columns:
                    raise ValueError(f"Interaction feature '{name}' not found in data")
        self.interaction_columns_ = [interaction_column(a, b) for a, b in self.interaction_pairs_]

        if self.lag_features:
            self.lag_features_ = list(self.lag_features)
        else:
            self.lag_features_ = self.base_features_ + self.interaction_columns_
        self.cumulative_features_ = list(self.cumulative_features or [])

        available = set(X.columns) | set(self.interaction_columns_)
        missing = [f for f in self.lag_features_ + self.cumulative_features_ if f not in available]
        if missing:
            raise ValueError(f"Temporal features not found in data: {missing}")

        self.feature_columns_ = (
            self.base_features_
            + self.interaction_columns_
            + [f'{LAG_PREFIX}{f}' for f in self.lag_features_]
            + [f'{CUMULATIVE_PREFIX}{f}' for f in self.cumulative_features_]
        )
        logger.info(f"Temporal features: {len(self.lag_features_)} lags, "
                    f"{len(self.cumulative_features_)} cumulative means, "
                    f"{len(self.interaction_columns_)} interactions")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        """Create temporal features, optionally dropping each subject's first round."""
        start_time = time.time()
        logger.info("Creating temporal features...")

        if self.subject_col not in X.columns or self.round_col not in X.columns:
            raise ValueError(f"DataFrame must contain '{self.subject_col}' and '{self.round_col}' columns")

        X_sorted = X.sort_values([self.subject_col, self.round_col]).copy()

        # Interactions first so that their lags describe the prior joint state
        for (a, b), col in zip(self.interaction_pairs_, self.interaction_columns_):
            X_sorted[col] = interaction(X_sorted[a].tolist(), X_sorted[b].tolist())

        n_rows = len(X_sorted)
        subjects = X_sorted[self.subject_col].to_numpy()
        rounds = X_sorted[self.round_col].to_numpy()
        lag_inputs = {f: X_sorted[f].to_numpy(dtype=float) for f in self.lag_features_}
        cum_inputs = {f: X_sorted[f].to_numpy(dtype=float) for f in self.cumulative_features_}

        lag_out = {f: np.full(n_rows, np.nan) for f in self.lag_features_}
        cum_out = {f: np.full(n_rows, np.nan) for f in self.cumulative_features_}
        has_history = np.zeros(n_rows, dtype=bool)

        states: Dict[Any, _SubjectState] = {}
        for i in range(n_rows):
            state = states.get(subjects[i])
            if state is None:
                state = states[subjects[i]] = _SubjectState()
            else:
                if rounds[i] == state.last_round:
                    raise ValueError(f"Duplicate round {rounds[i]} for subject {subjects[i]}")
                has_history[i] = True
                for f in self.lag_features_:
                    lag_out[f][i] = state.previous[f]
            state.last_round = rounds[i]

            for f in self.lag_features_:
                state.previous[f] = lag_inputs[f][i]
            for f in self.cumulative_features_:
                value = cum_inputs[f][i]
                if not np.isnan(value):
                    state.sums[f] = state.sums.get(f, 0.0) + value
                    state.counts[f] = state.counts.get(f, 0) + 1
                if state.counts.get(f):
                    cum_out[f][i] = state.sums[f] / state.counts[f]

        new_columns = {f'{LAG_PREFIX}{f}': lag_out[f] for f in self.lag_features_}
        new_columns.update({f'{CUMULATIVE_PREFIX}{f}': cum_out[f] for f in self.cumulative_features_})
        X_sorted = pd.concat([X_sorted, pd.DataFrame(new_columns, index=X_sorted.index)], axis=1)

        if self.drop_incomplete:
            before = len(X_sorted)
            X_sorted = X_sorted[has_history]
            logger.info(f"Dropped {before - len(X_sorted)} rows without a prior round")

        elapsed_time = time.time() - start_time
        logger.info(f"Created {len(new_columns) + len(self.interaction_columns_)} temporal features "
                    f"for {len(states)} subjects in {elapsed_time:.2f} seconds")
        return X_sorted.reset_index(drop=True)

    def get_feature_names_out(self, input_features=None):
        """Get model-ready feature names."""
        return self.feature_columns_
