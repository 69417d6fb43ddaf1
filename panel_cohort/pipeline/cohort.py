"""
Cohort construction: terminal-event labels, per-subject truncation and the
minimum-rounds inclusion rule.

The terminal event is a move to institutional (nursing home / skilled
nursing) residence. Each subject's record stream is cut at the first round
the event is observed, inclusive, and subjects left with too few rounds are
excluded. All work happens subject by subject, so it can be fanned out
across subjects with dask without changing the result.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import dask
import numpy as np
import pandas as pd
from dask.delayed import delayed
from sklearn.base import BaseEstimator, TransformerMixin
from tqdm import tqdm

from .recoding import is_absent

logger = logging.getLogger(__name__)

COMMUNITY = 'community'
TERMINAL = 'terminal'
UNKNOWN = 'unknown'
AMBIGUOUS = 'ambiguous'


class MissingLabelPolicy:
    """How rounds with unknown residence status are treated during truncation.

    AS_COMMUNITY coalesces a missing label to 0: a subject not yet observed
    in institutional care is assumed to still live in the community. This
    conflates "never institutionalized" with "status unknown" and matches
    the policy the cohort was originally built with.

    DROP_ROUND removes unknown-status rounds before truncation and before
    the minimum-rounds count.
    """
    AS_COMMUNITY = 'as_community'
    DROP_ROUND = 'drop_round'

    ALL = (AS_COMMUNITY, DROP_ROUND)

    @classmethod
    def validate(cls, policy: str) -> str:
        if policy not in cls.ALL:
            raise ValueError(f"Unknown missing-label policy '{policy}' (expected one of {cls.ALL})")
        return policy


@dataclass(frozen=True)
class ResidenceCodebook:
    """Three-way partition of residence-status codes."""
    community_codes: frozenset = frozenset({1, 2, 3})
    terminal_codes: frozenset = frozenset({4, 5})
    unknown_codes: frozenset = frozenset({6, 7, 8})

    @classmethod
    def from_config(cls, cohort_config: Dict[str, Any]) -> 'ResidenceCodebook':
        default = cls()
        return cls(
            community_codes=frozenset(cohort_config.get('community_codes', default.community_codes)),
            terminal_codes=frozenset(cohort_config.get('terminal_codes', default.terminal_codes)),
            unknown_codes=frozenset(cohort_config.get('unknown_codes', default.unknown_codes)),
        )

    def bucket(self, code: Any) -> str:
        if is_absent(code):
            return AMBIGUOUS
        if code in self.community_codes:
            return COMMUNITY
        if code in self.terminal_codes:
            return TERMINAL
        if code in self.unknown_codes:
            return UNKNOWN
        return AMBIGUOUS


DEFAULT_CODEBOOK = ResidenceCodebook()


def derive_label(residence_code: Any, codebook: ResidenceCodebook = DEFAULT_CODEBOOK) -> float:
    """Return 0 (community), 1 (terminal) or NaN (unknown or unrecognised code)."""
    bucket = codebook.bucket(residence_code)
    if bucket == COMMUNITY:
        return 0
    if bucket == TERMINAL:
        return 1
    return np.nan


def first_terminal_round(rounds: Sequence, labels: Sequence) -> Optional[int]:
    """Smallest round whose label is 1, or None if the subject never reaches it."""
    terminal = [r for r, label in zip(rounds, labels) if not is_absent(label) and label == 1]
    return min(terminal) if terminal else None


def retain_through(records: pd.DataFrame, first_round: Optional[int],
                   round_col: str = 'round') -> pd.DataFrame:
    """Keep rounds up to and including ``first_round`` (all rounds if None)."""
    if first_round is None:
        return records
    return records[records[round_col] <= first_round]


def truncate_and_filter(subject_records: pd.DataFrame,
                        min_rounds: int = 2,
                        missing_label_policy: str = MissingLabelPolicy.AS_COMMUNITY,
                        round_col: str = 'round',
                        label_col: str = 'label') -> Optional[pd.DataFrame]:
    """Truncate one subject's rounds at the first terminal event.

    Args:
        subject_records: One subject's records with ``round`` and ``label`` columns
        min_rounds: Minimum retained rounds for the subject to stay in the cohort
        missing_label_policy: See :class:`MissingLabelPolicy`

    Returns:
        The retained records sorted by round, or None if the subject is excluded
    """
    MissingLabelPolicy.validate(missing_label_policy)
    records = subject_records.sort_values(round_col)

    if missing_label_policy == MissingLabelPolicy.DROP_ROUND:
        records = records[records[label_col].notna()].copy()
    else:
        records = records.copy()
        records[label_col] = records[label_col].fillna(0)

    first_round = first_terminal_round(records[round_col].tolist(), records[label_col].tolist())
    retained = retain_through(records, first_round, round_col)

    if len(retained) < min_rounds:
        return None
    retained = retained.copy()
    retained[label_col] = retained[label_col].astype(int)
    return retained


@dataclass
class CohortDiagnostics:
    """Counts of data-quality outcomes that are recovered rather than raised."""
    subjects_in: int = 0
    subjects_kept: int = 0
    rounds_in: int = 0
    rounds_kept: int = 0
    rounds_truncated: int = 0
    rounds_dropped_unknown: int = 0
    terminal_subjects: int = 0
    unknown_residence_codes: int = 0
    ambiguous_residence_codes: int = 0
    rounds_missing_subject: int = 0
    ambiguous_code_values: Dict[str, int] = field(default_factory=dict)
    invalid_binary_codes: Dict[str, int] = field(default_factory=dict)
    excluded_subject_ids: List[Any] = field(default_factory=list)

    @property
    def subjects_excluded(self) -> int:
        return len(self.excluded_subject_ids)

    def merge(self, other: 'CohortDiagnostics') -> 'CohortDiagnostics':
        """Combine per-batch diagnostics (subject-level counters only)."""
        self.subjects_in += other.subjects_in
        self.subjects_kept += other.subjects_kept
        self.rounds_kept += other.rounds_kept
        self.rounds_truncated += other.rounds_truncated
        self.rounds_dropped_unknown += other.rounds_dropped_unknown
        self.terminal_subjects += other.terminal_subjects
        self.excluded_subject_ids.extend(other.excluded_subject_ids)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subjects_in': self.subjects_in,
            'subjects_kept': self.subjects_kept,
            'subjects_excluded': self.subjects_excluded,
            'rounds_in': self.rounds_in,
            'rounds_kept': self.rounds_kept,
            'rounds_truncated': self.rounds_truncated,
            'rounds_dropped_unknown': self.rounds_dropped_unknown,
            'terminal_subjects': self.terminal_subjects,
            'unknown_residence_codes': self.unknown_residence_codes,
            'ambiguous_residence_codes': self.ambiguous_residence_codes,
            'rounds_missing_subject': self.rounds_missing_subject,
            'ambiguous_code_values': dict(self.ambiguous_code_values),
            'invalid_binary_codes': dict(self.invalid_binary_codes),
            'excluded_subject_ids': [str(s) for s in self.excluded_subject_ids],
        }


def _process_subjects(groups: Iterable[pd.DataFrame], min_rounds: int, policy: str,
                      subject_col: str, round_col: str, label_col: str):
    """Truncate and filter a batch of subjects; returns (kept frames, diagnostics)."""
    kept = []
    diagnostics = CohortDiagnostics()
    for records in groups:
        subject_id = records[subject_col].iloc[0]
        diagnostics.subjects_in += 1
        if policy == MissingLabelPolicy.DROP_ROUND:
            diagnostics.rounds_dropped_unknown += int(records[label_col].isna().sum())

        retained = truncate_and_filter(records, min_rounds, policy, round_col, label_col)
        if retained is None:
            diagnostics.excluded_subject_ids.append(subject_id)
            continue

        available = len(records) - (int(records[label_col].isna().sum())
                                    if policy == MissingLabelPolicy.DROP_ROUND else 0)
        diagnostics.rounds_truncated += available - len(retained)
        diagnostics.rounds_kept += len(retained)
        diagnostics.subjects_kept += 1
        if retained[label_col].iloc[-1] == 1:
            diagnostics.terminal_subjects += 1
        kept.append(retained)
    return kept, diagnostics


class CohortLabeler(BaseEstimator, TransformerMixin):
    """Label every record and reduce each subject to its modeling rounds."""

    def __init__(self,
                 codebook: ResidenceCodebook = DEFAULT_CODEBOOK,
                 min_rounds: int = 2,
                 missing_label_policy: str = MissingLabelPolicy.AS_COMMUNITY,
                 subject_col: str = 'subject_id',
                 round_col: str = 'round',
                 residence_col: str = 'residence_code',
                 label_col: str = 'label',
                 parallel: bool = False,
                 batch_size: int = 500):
        """
        Args:
            codebook: Residence-code partition used to derive labels
            min_rounds: Subjects retaining fewer rounds are excluded
            missing_label_policy: See :class:`MissingLabelPolicy`
            parallel: Fan subject batches out with dask (threaded scheduler)
            batch_size: Subjects per dask task
        """
        self.codebook = codebook
        self.min_rounds = min_rounds
        self.missing_label_policy = missing_label_policy
        self.subject_col = subject_col
        self.round_col = round_col
        self.residence_col = residence_col
        self.label_col = label_col
        self.parallel = parallel
        self.batch_size = batch_size
        self.diagnostics_ = CohortDiagnostics()

    def fit(self, X: pd.DataFrame, y=None):
        MissingLabelPolicy.validate(self.missing_label_policy)
        required = [self.subject_col, self.round_col, self.residence_col]
        missing = [c for c in required if c not in X.columns]
        if missing:
            raise ValueError(f"DataFrame must contain {missing} columns")
        if self.min_rounds < 1:
            raise ValueError(f"min_rounds must be >= 1, got {self.min_rounds}")
        return self

    def label_records(self, X: pd.DataFrame) -> pd.DataFrame:
        """Add ``residence_bucket`` and ``label`` columns without dropping rows."""
        X_out = X.copy()
        buckets = X_out[self.residence_col].map(self.codebook.bucket)
        X_out['residence_bucket'] = buckets
        X_out[self.label_col] = buckets.map({COMMUNITY: 0, TERMINAL: 1}).astype(float)
        return X_out

    def _count_codes(self, labeled: pd.DataFrame, diagnostics: CohortDiagnostics):
        buckets = labeled['residence_bucket']
        diagnostics.unknown_residence_codes = int((buckets == UNKNOWN).sum())
        ambiguous = labeled.loc[buckets == AMBIGUOUS, self.residence_col]
        diagnostics.ambiguous_residence_codes = int(len(ambiguous))
        diagnostics.ambiguous_code_values = {
            str(code): int(n) for code, n in ambiguous.astype(str).value_counts().items()
        }
        if diagnostics.ambiguous_residence_codes:
            logger.warning(f"{diagnostics.ambiguous_residence_codes} residence codes outside the codebook "
                           f"were treated as missing: {diagnostics.ambiguous_code_values}")

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        start_time = time.time()
        logger.info(f"Building cohort (min_rounds={self.min_rounds}, policy={self.missing_label_policy})...")

        labeled = self.label_records(X)
        diagnostics = CohortDiagnostics(rounds_in=len(labeled))
        self._count_codes(labeled, diagnostics)

        missing_subject = labeled[self.subject_col].isna()
        diagnostics.rounds_missing_subject = int(missing_subject.sum())
        if diagnostics.rounds_missing_subject:
            logger.warning(f"Dropped {diagnostics.rounds_missing_subject} rounds with no subject id")

        groups = [g for _, g in labeled[~missing_subject].groupby(self.subject_col, sort=True)]
        args = (self.min_rounds, self.missing_label_policy, self.subject_col, self.round_col, self.label_col)

        if self.parallel and len(groups) > self.batch_size:
            batches = [groups[i:i + self.batch_size] for i in range(0, len(groups), self.batch_size)]
            logger.info(f"Processing {len(groups)} subjects in {len(batches)} dask batches")
            tasks = [delayed(_process_subjects)(batch, *args) for batch in batches]
            results = dask.compute(*tasks, scheduler='threads')
        else:
            results = [_process_subjects(tqdm(groups, desc='Subjects', disable=len(groups) < 1000), *args)]

        kept: List[pd.DataFrame] = []
        for batch_kept, batch_diagnostics in results:
            kept.extend(batch_kept)
            diagnostics.merge(batch_diagnostics)

        if kept:
            cohort = pd.concat(kept, ignore_index=True)
        else:
            cohort = labeled.iloc[0:0].copy()
        cohort = cohort.sort_values([self.subject_col, self.round_col]).reset_index(drop=True)

        if diagnostics.subjects_excluded:
            logger.warning(f"Excluded {diagnostics.subjects_excluded} subjects with fewer than "
                           f"{self.min_rounds} retained rounds")
        self.diagnostics_ = diagnostics

        elapsed_time = time.time() - start_time
        logger.info(f"Cohort: {diagnostics.subjects_kept}/{diagnostics.subjects_in} subjects, "
                    f"{diagnostics.rounds_kept} rounds, {diagnostics.terminal_subjects} terminal "
                    f"in {elapsed_time:.2f} seconds")
        return cohort


def build_labeler(cohort_config: Dict[str, Any], columns: Optional[Dict[str, str]] = None) -> CohortLabeler:
    """Create a :class:`CohortLabeler` from the ``cohort`` config section."""
    columns = columns or {}
    return CohortLabeler(
        codebook=ResidenceCodebook.from_config(cohort_config),
        min_rounds=int(cohort_config.get('min_rounds', 2)),
        missing_label_policy=cohort_config.get('missing_label_policy', MissingLabelPolicy.AS_COMMUNITY),
        subject_col=columns.get('subject_id', 'subject_id'),
        round_col=columns.get('round', 'round'),
        residence_col=columns.get('residence_code', 'residence_code'),
        parallel=bool(cohort_config.get('parallel', False)),
        batch_size=int(cohort_config.get('batch_size', 500)),
    )
