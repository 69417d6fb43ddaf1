"""
Data preprocessing utilities: raw survey validation, imputation of absent
feature values and optional scaling ahead of the model collaborator.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.impute import SimpleImputer
from sklearn.preprocessing import MinMaxScaler, StandardScaler

logger = logging.getLogger(__name__)

SCALERS = {
    'standard': StandardScaler,
    'minmax': MinMaxScaler,
}


class MissingValueHandler(BaseEstimator, TransformerMixin):
    """Impute absent feature values with statistics learned on the training partition.

    Lag features of a subject whose prior value was absent stay absent after
    feature engineering; this step fills them before the model sees them.
    """

    def __init__(self,
                 numeric_strategy: str = 'median',
                 add_indicator: bool = False):
        """
        Args:
            numeric_strategy: SimpleImputer strategy ('mean', 'median', 'most_frequent', 'constant')
            add_indicator: Append a binary ``<col>_was_missing`` column per feature absent in training
        """
        self.numeric_strategy = numeric_strategy
        self.add_indicator = add_indicator

    def fit(self, X: pd.DataFrame, y=None):
        start_time = time.time()

        numeric = X.select_dtypes(include=[np.number])
        absent_share = numeric.isna().mean()
        # Nothing to learn from a column absent in every training row; it is filled with 0
        self.empty_features_ = absent_share[absent_share == 1.0].index.tolist()
        self.fitted_features_ = absent_share[absent_share < 1.0].index.tolist()
        self.indicator_features_ = (absent_share[absent_share > 0].index.tolist()
                                    if self.add_indicator else [])

        self.imputer_ = None
        if self.fitted_features_:
            fill_value = 0 if self.numeric_strategy == 'constant' else None
            self.imputer_ = SimpleImputer(strategy=self.numeric_strategy, fill_value=fill_value)
            self.imputer_.fit(numeric[self.fitted_features_])

        if self.empty_features_:
            logger.warning(f"Features absent in every training row (filled with 0): {self.empty_features_}")
        logger.info(f"Fitted {self.numeric_strategy} imputation for {len(self.fitted_features_)} features "
                    f"in {time.time() - start_time:.2f} seconds")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        out = X.copy()
        indicators = {f'{col}_was_missing': out[col].isna().astype(int)
                      for col in self.indicator_features_ if col in out.columns}

        if self.imputer_ is not None:
            out[self.fitted_features_] = self.imputer_.transform(out[self.fitted_features_])
        if self.empty_features_:
            out[self.empty_features_] = out[self.empty_features_].fillna(0)

        if indicators:
            out = pd.concat([out, pd.DataFrame(indicators, index=out.index)], axis=1)
        return out


class DataValidator:
    """Validate raw survey records before cohort construction.

    Rules are registered per column and evaluated in order; ``validate``
    returns a mapping column -> list of human-readable violations and never
    raises, leaving the decision to the caller.
    """

    def __init__(self):
        self.rules: Dict[str, List[Callable[[pd.Series, pd.DataFrame], Optional[str]]]] = {}
        self.required: List[str] = []

    def add_rule(self, column: str, rule_type: str, **params):
        """Register a check. ``rule_type`` is one of required, range, integer,
        categorical, missing_rate or unique_key."""
        if rule_type == 'required':
            self.required.append(column)
            return
        check = getattr(self, f'_check_{rule_type}', None)
        if check is None:
            raise ValueError(f"Unknown validation rule: {rule_type}")
        self.rules.setdefault(column, []).append(lambda s, df: check(s, df, **params))

    @staticmethod
    def _check_range(values: pd.Series, df: pd.DataFrame, min=None, max=None) -> Optional[str]:
        numeric = pd.to_numeric(values, errors='coerce')
        problems = []
        if min is not None and (numeric < min).any():
            problems.append(f"{int((numeric < min).sum())} values below {min}")
        if max is not None and (numeric > max).any():
            problems.append(f"{int((numeric > max).sum())} values above {max}")
        return "; ".join(problems) or None

    @staticmethod
    def _check_integer(values: pd.Series, df: pd.DataFrame) -> Optional[str]:
        numeric = pd.to_numeric(values, errors='coerce').dropna()
        n_bad = int((numeric != np.floor(numeric)).sum())
        return f"{n_bad} non-integer values" if n_bad else None

    @staticmethod
    def _check_categorical(values: pd.Series, df: pd.DataFrame, allowed_values=()) -> Optional[str]:
        present = values.dropna()
        n_bad = int((~present.isin(list(allowed_values))).sum())
        return f"{n_bad} values outside {sorted(allowed_values)}" if n_bad else None

    @staticmethod
    def _check_missing_rate(values: pd.Series, df: pd.DataFrame, max_rate: float = 0.1) -> Optional[str]:
        rate = values.isna().mean()
        return f"{rate:.2%} missing exceeds {max_rate:.2%}" if rate > max_rate else None

    @staticmethod
    def _check_unique_key(values: pd.Series, df: pd.DataFrame, with_columns=()) -> Optional[str]:
        keys = [values.name] + [c for c in with_columns if c in df.columns]
        n_dup = int(df.duplicated(subset=keys).sum())
        return f"{n_dup} duplicate {tuple(keys)} rows" if n_dup else None

    def validate(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        violations: Dict[str, List[str]] = {}
        for column in self.required:
            if column not in df.columns:
                violations[column] = ["required column is missing"]

        for column, checks in self.rules.items():
            if column not in df.columns:
                continue
            found = [msg for msg in (check(df[column], df) for check in checks) if msg]
            if found:
                violations.setdefault(column, []).extend(found)
        return violations

    def setup_survey_rules(self, columns: Optional[Dict[str, str]] = None,
                           residence_codes: Optional[List[int]] = None):
        """Rules for a (subject, round) survey export."""
        columns = columns or {}
        subject_col = columns.get('subject_id', 'subject_id')
        round_col = columns.get('round', 'round')
        residence_col = columns.get('residence_code', 'residence_code')

        for col in (subject_col, round_col, residence_col):
            self.add_rule(col, 'required')
        self.add_rule(subject_col, 'missing_rate', max_rate=0.0)
        self.add_rule(subject_col, 'unique_key', with_columns=[round_col])
        self.add_rule(round_col, 'missing_rate', max_rate=0.0)
        self.add_rule(round_col, 'range', min=1)
        self.add_rule(round_col, 'integer')
        if residence_codes is not None:
            self.add_rule(residence_col, 'categorical', allowed_values=list(residence_codes))


class DataScaler(BaseEstimator, TransformerMixin):
    """Scale numeric features (for linear model collaborators)."""

    def __init__(self, method: str = 'standard'):
        """
        Args:
            method: 'standard' or 'minmax'
        """
        self.method = method

    def fit(self, X: pd.DataFrame, y=None):
        if self.method not in SCALERS:
            raise ValueError(f"Unknown scaling method: {self.method} (expected one of {sorted(SCALERS)})")
        self.columns_ = X.select_dtypes(include=[np.number]).columns.tolist()
        self.scaler_ = SCALERS[self.method]()
        if self.columns_:
            self.scaler_.fit(X[self.columns_])
        logger.info(f"Fitted {self.method} scaler for {len(self.columns_)} features")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        out = X.copy()
        if self.columns_:
            out[self.columns_] = self.scaler_.transform(out[self.columns_])
        return out
