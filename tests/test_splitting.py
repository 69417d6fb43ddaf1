"""
Tests for subject-level partitioning and round re-origination.
"""

import pandas as pd
import pytest

from panel_cohort.exceptions import SplitOverlapError
from panel_cohort.pipeline.splitting import (
    ParticipantSplitter,
    assert_disjoint,
    build_splitter,
    reorigin,
    reorigin_frame,
)


class TestParticipantSplitter:
    """Test the subject splitter."""

    def test_disjoint_and_complete(self):
        ids = [f'SP{i:04d}' for i in range(100)]
        train, test = ParticipantSplitter().split(ids, train_fraction=0.8, seed=42)

        assert set(train).isdisjoint(test)
        assert set(train) | set(test) == set(ids)
        assert len(train) == 80
        assert len(test) == 20

    def test_disjoint_across_seeds_and_fractions(self):
        ids = [f'SP{i:04d}' for i in range(100)]
        strata = {s: int(i % 5 == 0) for i, s in enumerate(ids)}
        splitter = ParticipantSplitter()
        for seed in [0, 1, 7, 42, 2024]:
            for fraction in [0.1, 0.5, 0.8, 0.9]:
                for subject_strata in [None, strata]:
                    train, test = splitter.split(ids, train_fraction=fraction, seed=seed, strata=subject_strata)
                    assert set(train).isdisjoint(test)
                    assert set(train) | set(test) == set(ids)
                    assert len(train) == round(100 * fraction)

    def test_deterministic(self):
        ids = [f'SP{i:04d}' for i in range(50)]
        splitter = ParticipantSplitter()
        assert splitter.split(ids, seed=7) == splitter.split(ids, seed=7)

    def test_input_order_irrelevant(self):
        ids = [f'SP{i:04d}' for i in range(50)]
        splitter = ParticipantSplitter()
        assert splitter.split(ids, seed=3) == splitter.split(list(reversed(ids)), seed=3)

    def test_seed_changes_assignment(self):
        ids = [f'SP{i:04d}' for i in range(200)]
        splitter = ParticipantSplitter()
        assert splitter.split(ids, seed=1) != splitter.split(ids, seed=2)

    def test_duplicates_collapse(self):
        ids = ['A', 'A', 'B', 'B', 'C', 'D', 'E']
        train, test = ParticipantSplitter().split(ids, train_fraction=0.6, seed=0)
        assert sorted(train + test) == ['A', 'B', 'C', 'D', 'E']

    def test_invalid_fraction(self):
        splitter = ParticipantSplitter()
        for fraction in [0, 1, 1.5, -0.2]:
            with pytest.raises(ValueError, match="train_fraction"):
                splitter.split(['A', 'B', 'C'], train_fraction=fraction)

    def test_too_few_subjects(self):
        with pytest.raises(ValueError, match="at least 2"):
            ParticipantSplitter().split(['A', 'A'])

    def test_stratified(self):
        ids = [f'SP{i:04d}' for i in range(100)]
        strata = {s: int(i % 5 == 0) for i, s in enumerate(ids)}
        train, test = ParticipantSplitter().split(ids, strata=strata)
        assert sum(strata[s] for s in test) == 4
        assert sum(strata[s] for s in train) == 16

    def test_stratum_too_small_falls_back(self):
        ids = [f'SP{i:04d}' for i in range(20)]
        strata = {s: int(i == 0) for i, s in enumerate(ids)}
        train, test = ParticipantSplitter().split(ids, strata=strata)
        assert set(train) | set(test) == set(ids)

    def test_split_frame(self, cohort_table):
        splitter = ParticipantSplitter(seed=42)
        train_df, test_df = splitter.split_frame(cohort_table)

        assert set(train_df['subject_id']).isdisjoint(test_df['subject_id'])
        assert len(train_df) + len(test_df) == len(cohort_table)
        assert (train_df['partition'] == 'train').all()
        assert (test_df['partition'] == 'test').all()
        # Every subject keeps all its rows on one side
        for subject, rows in cohort_table.groupby('subject_id'):
            side = train_df if subject in set(train_df['subject_id']) else test_df
            assert (side['subject_id'] == subject).sum() == len(rows)

    def test_build_splitter(self):
        splitter = build_splitter({'train_fraction': 0.7}, seed=11)
        assert splitter.train_fraction == 0.7
        assert splitter.seed == 11
        assert splitter.stratify is True


class TestAssertDisjoint:
    """Test the leakage check."""

    def test_disjoint(self):
        assert_disjoint(['A', 'B'], ['C'])

    def test_overlap(self):
        with pytest.raises(SplitOverlapError) as exc_info:
            assert_disjoint(['A', 'B', 'C'], ['C', 'B', 'D'])
        assert exc_info.value.overlap == ['B', 'C']


class TestReorigin:
    """Test round re-origination."""

    def test_reorigin(self):
        records = pd.DataFrame({'subject_id': 'S1', 'round': [4, 6, 9]})
        out = reorigin(records)
        assert out['round'].tolist() == [0, 2, 5]
        assert out['source_round'].tolist() == [4, 6, 9]

    def test_reorigin_keeps_order_and_length(self):
        records = pd.DataFrame({'subject_id': 'S1', 'round': [6, 4, 9]})
        out = reorigin(records)
        assert out['round'].tolist() == [2, 0, 5]
        assert len(out) == 3

    def test_reorigin_empty(self):
        out = reorigin(pd.DataFrame({'subject_id': [], 'round': []}))
        assert out.empty

    def test_reorigin_frame_per_subject(self):
        df = pd.DataFrame({
            'subject_id': ['A', 'A', 'B', 'B', 'B'],
            'round': [3, 5, 1, 2, 4],
        })
        out = reorigin_frame(df)
        assert out['round'].tolist() == [0, 2, 0, 1, 3]
        assert out['source_round'].tolist() == [3, 5, 1, 2, 4]
