"""
Tests for terminal-event labeling, truncation and cohort filtering.
"""

import numpy as np
import pandas as pd
import pytest

from panel_cohort.pipeline.cohort import (
    AMBIGUOUS,
    CohortLabeler,
    MissingLabelPolicy,
    ResidenceCodebook,
    build_labeler,
    derive_label,
    first_terminal_round,
    truncate_and_filter,
)


def _subject(labels, rounds=None, subject_id='S1'):
    rounds = rounds or list(range(1, len(labels) + 1))
    return pd.DataFrame({'subject_id': subject_id, 'round': rounds, 'label': labels})


def _raw(codes, rounds=None, subject_id='S1'):
    rounds = rounds or list(range(1, len(codes) + 1))
    return pd.DataFrame({'subject_id': subject_id, 'round': rounds, 'residence_code': codes})


class TestDeriveLabel:
    """Test residence-code labeling."""

    def test_community_and_terminal(self):
        assert derive_label(1) == 0
        assert derive_label(3) == 0
        assert derive_label(4) == 1
        assert derive_label(5) == 1

    def test_unknown_and_ambiguous(self):
        assert np.isnan(derive_label(7))
        assert np.isnan(derive_label(np.nan))
        # Outside every code set
        assert np.isnan(derive_label(42))

    def test_codebook_from_config(self):
        codebook = ResidenceCodebook.from_config({'community_codes': [1], 'terminal_codes': [2, 3]})
        assert derive_label(2, codebook) == 1
        assert codebook.bucket(9) == AMBIGUOUS


class TestTruncateAndFilter:
    """Test per-subject truncation at the first terminal round."""

    def test_first_terminal_round(self):
        assert first_terminal_round([1, 2, 3, 4], [0, 0, 1, 1]) == 3
        assert first_terminal_round([1, 2], [0, 0]) is None
        assert first_terminal_round([1, 2], [np.nan, 1]) == 2

    def test_truncates_at_first_terminal(self):
        """Rounds after the first terminal round are dropped, even a return home."""
        result = truncate_and_filter(_subject([0, 0, 1, 0]))
        assert result['round'].tolist() == [1, 2, 3]
        assert result['label'].tolist() == [0, 0, 1]

    def test_persistent_terminal(self):
        result = truncate_and_filter(_subject([0, 0, 1, 1]))
        assert result['round'].tolist() == [1, 2, 3]
        assert result['label'].iloc[-1] == 1

    def test_never_terminal_keeps_all(self):
        result = truncate_and_filter(_subject([0, 0, 0]))
        assert result['round'].tolist() == [1, 2, 3]
        assert result['label'].tolist() == [0, 0, 0]

    def test_single_round_subject_excluded(self):
        assert truncate_and_filter(_subject([1])) is None

    def test_terminal_at_first_round_excluded(self):
        """Only one retained round remains, below the minimum."""
        assert truncate_and_filter(_subject([1, 0, 0])) is None

    def test_min_rounds(self):
        assert truncate_and_filter(_subject([0, 1]), min_rounds=3) is None
        assert truncate_and_filter(_subject([0, 1]), min_rounds=2) is not None

    def test_terminal_only_in_last_row(self):
        result = truncate_and_filter(_subject([0, 1, 1, 0, 1], rounds=[2, 4, 5, 7, 8]))
        assert result['label'].tolist() == [0, 1]
        assert (result['label'].iloc[:-1] == 0).all()

    def test_unsorted_input(self):
        result = truncate_and_filter(_subject([1, 0, 0], rounds=[3, 1, 2]))
        assert result['round'].tolist() == [1, 2, 3]

    def test_missing_label_as_community(self):
        result = truncate_and_filter(_subject([0, np.nan, 1]))
        assert result['label'].tolist() == [0, 0, 1]

    def test_missing_label_drop_round(self):
        result = truncate_and_filter(_subject([0, np.nan, 1]),
                                     missing_label_policy=MissingLabelPolicy.DROP_ROUND)
        assert result['round'].tolist() == [1, 3]

        # Dropped rounds do not count towards min_rounds
        assert truncate_and_filter(_subject([0, np.nan]),
                                   missing_label_policy=MissingLabelPolicy.DROP_ROUND) is None

    def test_unknown_policy(self):
        with pytest.raises(ValueError, match="policy"):
            truncate_and_filter(_subject([0, 0]), missing_label_policy='impute')

    def test_original_rounds_preserved(self):
        """Truncation never renumbers rounds."""
        result = truncate_and_filter(_subject([0, 0, 1], rounds=[4, 6, 9]))
        assert result['round'].tolist() == [4, 6, 9]


class TestCohortLabeler:
    """Test the cohort transformer."""

    def test_transitions_to_care(self):
        labeler = CohortLabeler()
        cohort = labeler.fit_transform(_raw([1, 1, 4, 4]))
        assert cohort['round'].tolist() == [1, 2, 3]
        assert cohort['label'].tolist() == [0, 0, 1]

    def test_stays_in_community(self):
        cohort = CohortLabeler().fit_transform(_raw([1, 1, 1]))
        assert cohort['round'].tolist() == [1, 2, 3]
        assert cohort['label'].tolist() == [0, 0, 0]

    def test_raw_survey(self, raw_survey_rounds):
        labeler = CohortLabeler()
        cohort = labeler.fit_transform(raw_survey_rounds)

        assert set(cohort['subject_id']) == {'S1', 'S2', 'S4'}
        assert cohort[cohort['subject_id'] == 'S1']['round'].tolist() == [1, 2, 3]
        # Unknown status at S4 round 2 is coalesced to community
        assert cohort[cohort['subject_id'] == 'S4']['label'].tolist() == [0, 0, 0]

        diagnostics = labeler.diagnostics_
        assert diagnostics.subjects_in == 4
        assert diagnostics.subjects_kept == 3
        assert diagnostics.excluded_subject_ids == ['S3']
        assert diagnostics.rounds_truncated == 1
        assert diagnostics.terminal_subjects == 1
        assert diagnostics.unknown_residence_codes == 1

    def test_drop_round_policy(self, raw_survey_rounds):
        labeler = CohortLabeler(missing_label_policy=MissingLabelPolicy.DROP_ROUND)
        cohort = labeler.fit_transform(raw_survey_rounds)
        assert cohort[cohort['subject_id'] == 'S4']['round'].tolist() == [1, 3]
        assert labeler.diagnostics_.rounds_dropped_unknown == 1

    def test_ambiguous_codes_counted(self):
        labeler = CohortLabeler()
        labeler.fit_transform(_raw([1, 9, 1]))
        assert labeler.diagnostics_.ambiguous_residence_codes == 1
        assert labeler.diagnostics_.ambiguous_code_values == {'9': 1}

    def test_missing_subject_id_counted(self):
        raw = pd.concat([_raw([1, 1, 1]), _raw([1, 4], subject_id=None)], ignore_index=True)
        labeler = CohortLabeler()
        cohort = labeler.fit_transform(raw)

        assert cohort['subject_id'].tolist() == ['S1', 'S1', 'S1']
        diagnostics = labeler.diagnostics_
        assert diagnostics.rounds_in == 5
        assert diagnostics.rounds_missing_subject == 2
        assert diagnostics.rounds_kept == 3
        assert diagnostics.to_dict()['rounds_missing_subject'] == 2

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="must contain"):
            CohortLabeler().fit(pd.DataFrame({'subject_id': ['S1'], 'round': [1]}))

    def test_parallel_matches_sequential(self):
        rng = np.random.RandomState(0)
        frames = []
        for i in range(30):
            n = rng.randint(1, 6)
            codes = rng.choice([1, 1, 1, 2, 4, 7], size=n).tolist()
            frames.append(_raw(codes, subject_id=f'SP{i:03d}'))
        raw = pd.concat(frames, ignore_index=True)

        sequential = CohortLabeler().fit_transform(raw)
        parallel_labeler = CohortLabeler(parallel=True, batch_size=4)
        parallel = parallel_labeler.fit_transform(raw)

        pd.testing.assert_frame_equal(sequential, parallel)
        assert parallel_labeler.diagnostics_.subjects_in == 30

    def test_build_labeler(self):
        labeler = build_labeler({'min_rounds': 3, 'missing_label_policy': 'drop_round', 'terminal_codes': [5]},
                                {'subject_id': 'pid'})
        assert labeler.min_rounds == 3
        assert labeler.missing_label_policy == MissingLabelPolicy.DROP_ROUND
        assert labeler.subject_col == 'pid'
        assert derive_label(4, labeler.codebook) != 1
