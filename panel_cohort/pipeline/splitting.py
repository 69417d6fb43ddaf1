"""
Subject-level train/test partitioning.

Subjects, never individual records, are assigned to partitions: splitting
records would leak a subject's trajectory across the boundary. The seed is
an explicit argument so every call is reproducible on its own.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split

from ..exceptions import SplitOverlapError

logger = logging.getLogger(__name__)

TRAIN = 'train'
TEST = 'test'


def assert_disjoint(train_ids: Iterable, test_ids: Iterable) -> None:
    """Raise :class:`SplitOverlapError` if any subject is in both partitions."""
    overlap = set(train_ids) & set(test_ids)
    if overlap:
        raise SplitOverlapError(overlap)


def reorigin(records: pd.DataFrame, round_col: str = 'round',
             source_col: str = 'source_round') -> pd.DataFrame:
    """Shift one subject's rounds so the earliest becomes 0.

    The original round is kept in ``source_col``; order and row count are
    unchanged.
    """
    out = records.copy()
    out[source_col] = out[round_col]
    if len(out):
        out[round_col] = out[round_col] - out[round_col].min()
    return out


def reorigin_frame(df: pd.DataFrame, subject_col: str = 'subject_id', round_col: str = 'round',
                   source_col: str = 'source_round') -> pd.DataFrame:
    """Apply :func:`reorigin` to every subject of a frame at once."""
    out = df.copy()
    out[source_col] = out[round_col]
    out[round_col] = out[round_col] - out.groupby(subject_col)[round_col].transform('min')
    return out


class ParticipantSplitter:
    """Partition subject identifiers into disjoint train/test groups."""

    def __init__(self,
                 train_fraction: float = 0.8,
                 seed: int = 42,
                 stratify: bool = True,
                 subject_col: str = 'subject_id',
                 label_col: str = 'label'):
        """
        Args:
            train_fraction: Share of subjects assigned to train, in (0, 1)
            seed: Random seed for the shuffle
            stratify: Stratify on a per-subject outcome when strata are available
        """
        self.train_fraction = train_fraction
        self.seed = seed
        self.stratify = stratify
        self.subject_col = subject_col
        self.label_col = label_col

    def split(self,
              subject_ids: Iterable,
              train_fraction: Optional[float] = None,
              seed: Optional[int] = None,
              strata: Optional[Mapping[Any, Any]] = None) -> Tuple[List, List]:
        """Split subject ids into ``(train_ids, test_ids)``.

        Duplicate ids collapse to one subject and ids are sorted before
        shuffling, so the result depends only on the id set, the fraction and
        the seed.

        Args:
            subject_ids: Subject identifiers (duplicates allowed)
            train_fraction: Overrides the instance fraction
            seed: Overrides the instance seed
            strata: Optional subject id -> stratum (e.g. ever reached the terminal event)
        """
        train_fraction = self.train_fraction if train_fraction is None else train_fraction
        seed = self.seed if seed is None else seed
        if not 0 < train_fraction < 1:
            raise ValueError(f"train_fraction must be in (0, 1), got {train_fraction}")

        ids = sorted(set(subject_ids), key=str)
        if len(ids) < 2:
            raise ValueError(f"Need at least 2 subjects to split, got {len(ids)}")

        stratify_on = None
        if self.stratify and strata is not None:
            labels = np.array([strata[s] for s in ids])
            _, counts = np.unique(labels, return_counts=True)
            if len(counts) > 1 and counts.min() >= 2:
                stratify_on = labels
            else:
                logger.warning("Stratum too small for a stratified split; splitting subjects without stratification")

        try:
            train_ids, test_ids = train_test_split(
                ids, train_size=train_fraction, random_state=seed, shuffle=True, stratify=stratify_on
            )
        except ValueError as e:
            if stratify_on is None:
                raise
            logger.warning(f"Stratified split failed ({e}); splitting subjects without stratification")
            train_ids, test_ids = train_test_split(
                ids, train_size=train_fraction, random_state=seed, shuffle=True
            )

        train_ids = sorted(train_ids, key=str)
        test_ids = sorted(test_ids, key=str)
        assert_disjoint(train_ids, test_ids)
        logger.info(f"Split {len(ids)} subjects: {len(train_ids)} train / {len(test_ids)} test (seed={seed})")
        return train_ids, test_ids

    def subject_strata(self, table: pd.DataFrame) -> Dict[Any, int]:
        """Per-subject stratum: 1 if the subject ever has label 1."""
        return table.groupby(self.subject_col)[self.label_col].max().fillna(0).astype(int).to_dict()

    def split_frame(self, table: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """Split a modeling table into train/test frames by subject."""
        if self.subject_col not in table.columns:
            raise ValueError(f"DataFrame must contain '{self.subject_col}' column")

        strata = self.subject_strata(table) if self.stratify and self.label_col in table.columns else None
        train_ids, test_ids = self.split(table[self.subject_col].unique(), strata=strata)

        train_df = table[table[self.subject_col].isin(train_ids)].copy()
        test_df = table[table[self.subject_col].isin(test_ids)].copy()
        train_df['partition'] = TRAIN
        test_df['partition'] = TEST

        assert_disjoint(train_df[self.subject_col].unique(), test_df[self.subject_col].unique())
        if self.label_col in table.columns:
            logger.info(f"Train prevalence: {train_df[self.label_col].mean():.3f}, "
                        f"test prevalence: {test_df[self.label_col].mean():.3f}")
        return train_df, test_df


def build_splitter(split_config: Dict[str, Any], seed: int,
                   columns: Optional[Dict[str, str]] = None) -> ParticipantSplitter:
    """Create a :class:`ParticipantSplitter` from the ``split`` config section."""
    columns = columns or {}
    return ParticipantSplitter(
        train_fraction=float(split_config.get('train_fraction', 0.8)),
        seed=int(split_config.get('seed', seed)),
        stratify=bool(split_config.get('stratify', True)),
        subject_col=columns.get('subject_id', 'subject_id'),
    )
