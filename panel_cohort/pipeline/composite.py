"""
Composite indices built from recoded binary items.

A composite sums its present constituent items (absent counts as 0, so a
composite is never marked missing because one item is missing) and
thresholds the count into a binary flag.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin

from ..exceptions import UnknownItemError
from ..utils.config import DEFAULT_CONFIG
from .recoding import RecodingTable, is_absent, recoded_column

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompositeIndex:
    """A named group of items aggregated into ``<name>_count`` / ``<name>_flag``."""
    name: str
    items: Tuple[str, ...]
    threshold: int = 1

    @property
    def count_column(self) -> str:
        return f"{self.name}_count"

    @property
    def flag_column(self) -> str:
        return f"{self.name}_flag"


def composites_from_config(composites_config: Mapping[str, Mapping]) -> List[CompositeIndex]:
    """Build the composite catalogue from the ``composites`` config section."""
    composites = []
    for name, spec in (composites_config or {}).items():
        items = tuple(spec.get('items', []))
        if not items:
            raise ValueError(f"Composite '{name}' has no items")
        composites.append(CompositeIndex(name=name, items=items, threshold=int(spec.get('threshold', 1))))
    return composites


DEFAULT_COMPOSITES = composites_from_config(DEFAULT_CONFIG['composites'])


class CompositeIndexBuilder(BaseEstimator, TransformerMixin):
    """Aggregate recoded items into composite counts and flags."""

    def __init__(self,
                 table: Optional[RecodingTable] = None,
                 composites: Optional[Sequence[CompositeIndex]] = None):
        """
        Args:
            table: Recoding rules used to resolve every constituent item
            composites: Composite definitions; each item must have a rule in ``table``

        Raises:
            UnknownItemError: if a composite references an item without a rule
        """
        self.table = table
        self.composites = composites
        self.feature_columns_: List[str] = []
        if table is not None:
            for composite in composites or ():
                for item in composite.items:
                    if item not in table:
                        raise UnknownItemError(item, composite.name)

    def _resolve(self, record: Mapping[str, Any], item: str) -> Any:
        rule = self.table.get(item)
        rc = recoded_column(item)
        if rc in record:
            return record[rc]
        return rule.apply(record.get(item, np.nan))

    def build_index(self, record: Mapping[str, Any], item_names: Iterable[str],
                    threshold: int = 1) -> Tuple[int, int]:
        """Return ``(count, flag)`` for one record.

        ``record`` maps column -> value and may hold raw items, recoded
        ``<item>_rc`` values, or both. Absent values contribute 0.
        """
        if self.table is None:
            raise ValueError("CompositeIndexBuilder requires a RecodingTable")
        count = 0
        for item in item_names:
            value = self._resolve(record, item)
            if not is_absent(value):
                count += value
        count = int(count)
        return count, int(count >= threshold)

    def fit(self, X: pd.DataFrame, y=None):
        self.feature_columns_ = []
        for composite in self.composites or ():
            self.feature_columns_.extend([composite.count_column, composite.flag_column])
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        start_time = time.time()
        logger.info(f"Building {len(self.composites or ())} composite indices...")

        new_columns: Dict[str, pd.Series] = {}
        for composite in self.composites or ():
            parts = []
            for item in composite.items:
                rc = recoded_column(item)
                if rc in X.columns:
                    parts.append(X[rc])
                elif item in X.columns:
                    parts.append(self.table.recode_series(item, X[item]))
                else:
                    # Item never asked in this export: contributes 0 like any absent value
                    logger.warning(f"Item '{item}' of composite '{composite.name}' not found in data")
            if parts:
                count = pd.concat(parts, axis=1).fillna(0).sum(axis=1).astype(int)
            else:
                count = pd.Series(0, index=X.index, dtype=int)
            new_columns[composite.count_column] = count
            new_columns[composite.flag_column] = (count >= composite.threshold).astype(int)
            logger.info(f"  {composite.flag_column}: prevalence {new_columns[composite.flag_column].mean():.3f}")

        X_out = pd.concat([X, pd.DataFrame(new_columns, index=X.index)], axis=1)

        elapsed_time = time.time() - start_time
        logger.info(f"Built composite indices in {elapsed_time:.2f} seconds")
        return X_out

    def get_feature_names_out(self, input_features=None):
        return self.feature_columns_
