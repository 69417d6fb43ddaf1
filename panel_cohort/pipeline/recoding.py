"""
Sentinel-aware recoding of raw survey items.

Survey exports reserve negative codes (and a few item-specific positive
codes such as 7 or 95) for refusal, don't-know and inapplicable skips.
Each item declares its own sentinel set in a declarative table; a single
generic routine consumes the table so that adding an item is a config
change rather than a code change.

Recoded values are written to new ``<item>_rc`` columns so the raw value is
kept for auditing.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin

from ..exceptions import SentinelConfigError, UnknownItemError

logger = logging.getLogger(__name__)

ABSENT = np.nan
DEFAULT_SENTINELS = frozenset({-9, -8, -7, -1})
RECODED_SUFFIX = "_rc"

YES_CODE = 1
NO_CODE = 2

RULES = ("yes_no", "at_least", "passthrough")


def is_absent(value: Any) -> bool:
    """True for the universal missing marker (and any other NA scalar)."""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def recode(value: Any, sentinel_set: Iterable) -> Any:
    """Return ``value`` unless it is one of the item's sentinel codes.

    Idempotent: an absent value stays absent and a valid value is never a
    sentinel, so recoding twice is a no-op.
    """
    if is_absent(value):
        return ABSENT
    if value in sentinel_set:
        return ABSENT
    return value


def normalize_binary(value: Any) -> Any:
    """Map the survey's 1=yes / 2=no convention to 1/0.

    Anything else (absent, already-binary 0, categorical codes) passes
    through untouched.
    """
    if is_absent(value):
        return ABSENT
    if value == YES_CODE:
        return 1
    if value == NO_CODE:
        return 0
    return value


def recoded_column(item: str) -> str:
    return f"{item}{RECODED_SUFFIX}"


@dataclass(frozen=True)
class ItemRule:
    """Recoding rule for one survey item.

    Args:
        name: Raw column name
        sentinels: Codes meaning refusal/don't-know/inapplicable for this item
        rule: 'yes_no' (1/2 -> 1/0), 'at_least' (ordinal >= cut -> 1) or 'passthrough'
        cut: Cut point for 'at_least' items
    """
    name: str
    sentinels: FrozenSet = DEFAULT_SENTINELS
    rule: str = "yes_no"
    cut: Optional[float] = None

    def __post_init__(self):
        if self.rule not in RULES:
            raise SentinelConfigError(self.name, f"unknown rule '{self.rule}' (expected one of {RULES})")
        if self.rule == "at_least" and self.cut is None:
            raise SentinelConfigError(self.name, "'at_least' rule requires a cut point")
        if self.rule == "yes_no":
            clash = {YES_CODE, NO_CODE} & set(self.sentinels)
            if clash:
                raise SentinelConfigError(
                    self.name, f"sentinel set {sorted(self.sentinels)} contains valid response code(s) {sorted(clash)}"
                )

    @property
    def is_binary(self) -> bool:
        return self.rule in ("yes_no", "at_least")

    def apply(self, value: Any) -> Any:
        """Recode a single raw value."""
        value = recode(value, self.sentinels)
        if is_absent(value):
            return ABSENT
        if self.rule == "yes_no":
            return normalize_binary(value)
        if self.rule == "at_least":
            return 1 if value >= self.cut else 0
        return value

    def apply_series(self, series: pd.Series) -> pd.Series:
        """Vectorized :meth:`apply` over a column."""
        values = pd.to_numeric(series, errors="coerce")
        values = values.mask(values.isin(list(self.sentinels)))
        if self.rule == "yes_no":
            values = values.replace({YES_CODE: 1, NO_CODE: 0})
        elif self.rule == "at_least":
            values = values.where(values.isna(), (values >= self.cut).astype(float))
        return values.astype(float)


class RecodingTable:
    """Item name -> :class:`ItemRule` lookup built from configuration."""

    def __init__(self, rules: Iterable[ItemRule] = ()):
        self._rules: Dict[str, ItemRule] = {}
        for rule in rules:
            self.register(rule)

    @classmethod
    def from_config(cls, items_config: Mapping[str, Mapping],
                    default_sentinels: Optional[Iterable] = None) -> "RecodingTable":
        """Build a table from the ``items`` section of the pipeline config.

        Each entry may set ``rule``, ``sentinels`` and ``cut``; ``sentinels``
        defaults to the table-wide set.
        """
        default = frozenset(default_sentinels) if default_sentinels is not None else DEFAULT_SENTINELS
        rules = []
        for name, spec in (items_config or {}).items():
            spec = spec or {}
            sentinels = spec.get("sentinels")
            if sentinels is not None and not isinstance(sentinels, (list, tuple, set, frozenset)):
                raise SentinelConfigError(name, f"sentinels must be a list of codes, got {sentinels!r}")
            rules.append(ItemRule(
                name=name,
                sentinels=frozenset(sentinels) if sentinels is not None else default,
                rule=spec.get("rule", "yes_no"),
                cut=spec.get("cut"),
            ))
        return cls(rules)

    def register(self, rule: ItemRule):
        self._rules[rule.name] = rule

    def get(self, item: str) -> ItemRule:
        try:
            return self._rules[item]
        except KeyError:
            raise UnknownItemError(item) from None

    def __contains__(self, item: str) -> bool:
        return item in self._rules

    def __iter__(self):
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def items(self) -> List[str]:
        return list(self._rules)

    def recode_value(self, item: str, value: Any) -> Any:
        return self.get(item).apply(value)

    def recode_series(self, item: str, series: pd.Series) -> pd.Series:
        return self.get(item).apply_series(series)


class SurveyRecoder(BaseEstimator, TransformerMixin):
    """Append ``<item>_rc`` columns for every configured item present in the frame."""

    def __init__(self, table: Optional[RecodingTable] = None, strict: bool = False):
        """
        Args:
            table: Recoding rules; items missing from the frame are skipped
            strict: Raise if a configured item column is missing from the frame
        """
        self.table = table
        self.strict = strict
        self.sentinel_counts_: Dict[str, int] = {}
        self.invalid_counts_: Dict[str, int] = {}
        self.items_: List[str] = []

    def fit(self, X: pd.DataFrame, y=None):
        if self.table is None:
            raise ValueError("SurveyRecoder requires a RecodingTable")
        missing = [item for item in self.table.items if item not in X.columns]
        if missing and self.strict:
            raise ValueError(f"Configured items missing from data: {missing}")
        if missing:
            logger.warning(f"Skipping {len(missing)} configured items not in data: {missing}")
        self.items_ = [item for item in self.table.items if item in X.columns]
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        start_time = time.time()
        logger.info(f"Recoding {len(self.items_)} survey items...")

        recoded = {}
        self.sentinel_counts_ = {}
        self.invalid_counts_ = {}
        for item in self.items_:
            rule = self.table.get(item)
            raw = pd.to_numeric(X[item], errors="coerce")
            self.sentinel_counts_[item] = int(raw.isin(list(rule.sentinels)).sum())
            values = rule.apply_series(raw)
            recoded[recoded_column(item)] = values
            if rule.is_binary:
                # Out-of-codebook answers pass through unchanged
                n_invalid = int((values.notna() & ~values.isin([0, 1])).sum())
                if n_invalid:
                    self.invalid_counts_[item] = n_invalid

        X_out = pd.concat([X, pd.DataFrame(recoded, index=X.index)], axis=1)

        if self.invalid_counts_:
            logger.warning(f"Binary items with values outside {{0, 1}} after recoding: {self.invalid_counts_}")

        hits = sum(self.sentinel_counts_.values())
        elapsed_time = time.time() - start_time
        logger.info(f"Recoded {len(recoded)} items ({hits} sentinel codes set absent) in {elapsed_time:.2f} seconds")
        return X_out

    def get_feature_names_out(self, input_features=None):
        return [recoded_column(item) for item in self.items_]
