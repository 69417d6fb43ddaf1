"""
Tests for composite index construction.
"""

import itertools

import numpy as np
import pandas as pd
import pytest

from panel_cohort.exceptions import UnknownItemError
from panel_cohort.pipeline.composite import (
    DEFAULT_COMPOSITES,
    CompositeIndex,
    CompositeIndexBuilder,
    composites_from_config,
)
from panel_cohort.pipeline.recoding import RecodingTable, SurveyRecoder
from panel_cohort.utils.config import DEFAULT_CONFIG


@pytest.fixture
def social(item_table):
    return CompositeIndexBuilder(item_table, [CompositeIndex('social', ('visit_limited', 'outings_limited'))])


class TestBuildIndex:
    """Test the per-record count/flag computation."""

    def test_all_absent(self, social):
        record = {'visit_limited': -8, 'outings_limited': np.nan}
        assert social.build_index(record, ['visit_limited', 'outings_limited']) == (0, 0)

    def test_one_present_positive(self, social):
        record = {'visit_limited': 1, 'outings_limited': -9}
        assert social.build_index(record, ['visit_limited', 'outings_limited']) == (1, 1)

    def test_count_bounded_by_item_count(self, item_table):
        builder = CompositeIndexBuilder(item_table)
        items = ['feeling_down', 'visit_limited', 'outings_limited', 'dementia_diagnosis']
        record = {'feeling_down': 4, 'visit_limited': 1, 'outings_limited': 1, 'dementia_diagnosis': 1}
        count, flag = builder.build_index(record, items)
        assert 0 <= count <= len(items)
        assert count == 4
        assert flag == 1

    def test_flag_consistent_with_count(self, social):
        for visit in [1, 2, -8]:
            for outings in [1, 2, -1]:
                count, flag = social.build_index(
                    {'visit_limited': visit, 'outings_limited': outings},
                    ['visit_limited', 'outings_limited'],
                )
                assert flag == int(count >= 1)

    def test_count_invariant_to_item_order(self, item_table):
        items = ('feeling_down', 'visit_limited', 'outings_limited', 'dementia_diagnosis')
        # present positive, sentinel, absent, item-specific sentinel, present negative
        records = [
            {'feeling_down': 4, 'visit_limited': -8, 'outings_limited': np.nan, 'dementia_diagnosis': 1},
            {'feeling_down': 1, 'visit_limited': 1, 'outings_limited': 2, 'dementia_diagnosis': 7},
            {'feeling_down': -9, 'visit_limited': np.nan, 'outings_limited': 1, 'dementia_diagnosis': 2},
        ]
        frame = pd.DataFrame(records)

        results, counts = set(), []
        for order in itertools.permutations(items):
            builder = CompositeIndexBuilder(item_table, [CompositeIndex('mixed', order)])
            results.add(tuple(builder.build_index(record, list(order)) for record in records))
            counts.append(builder.fit_transform(frame)['mixed_count'].tolist())

        assert results == {((2, 1), (1, 1), (1, 1))}
        assert all(c == [2, 1, 1] for c in counts)

    def test_stray_binary_code_passes_through(self, item_table):
        # A yes/no answer outside 1/2 is kept as-is; the recoder reports it
        record = {'visit_limited': 5, 'outings_limited': 2}
        builder = CompositeIndexBuilder(item_table)
        assert builder.build_index(record, ['visit_limited', 'outings_limited']) == (5, 1)

    def test_threshold(self, social):
        record = {'visit_limited': 1, 'outings_limited': 2}
        assert social.build_index(record, ['visit_limited', 'outings_limited'], threshold=2) == (1, 0)

    def test_prefers_recoded_column(self, social):
        record = {'visit_limited': 1, 'visit_limited_rc': 0.0, 'outings_limited_rc': 1.0}
        assert social.build_index(record, ['visit_limited', 'outings_limited']) == (1, 1)

    def test_missing_item_counts_as_absent(self, social):
        assert social.build_index({}, ['visit_limited', 'outings_limited']) == (0, 0)

    def test_unknown_item(self, social):
        with pytest.raises(UnknownItemError):
            social.build_index({'hip_fracture': 1}, ['hip_fracture'])


class TestCompositeIndexBuilder:
    """Test the composite transformer."""

    def test_unknown_item_rejected_at_construction(self, item_table):
        with pytest.raises(UnknownItemError, match="composite 'care'"):
            CompositeIndexBuilder(item_table, [CompositeIndex('care', ('no_regular_doctor',))])

    def test_from_config(self):
        composites = composites_from_config({'social': {'items': ['a', 'b'], 'threshold': 2}})
        assert composites == [CompositeIndex('social', ('a', 'b'), 2)]

        with pytest.raises(ValueError, match="no items"):
            composites_from_config({'empty': {'items': []}})

    def test_transform_matches_build_index(self, raw_survey_rounds, item_table, social):
        recoded = SurveyRecoder(item_table).fit_transform(raw_survey_rounds)
        out = social.fit_transform(recoded)

        assert social.get_feature_names_out() == ['social_count', 'social_flag']
        for _, row in out.iterrows():
            expected = social.build_index(row.to_dict(), ['visit_limited', 'outings_limited'])
            assert (row['social_count'], row['social_flag']) == expected

    def test_transform_from_raw_items(self, raw_survey_rounds, social):
        """Without ``_rc`` columns the raw items are recoded on the fly."""
        out = social.fit_transform(raw_survey_rounds)
        s1 = out[out['subject_id'] == 'S1']
        assert s1['social_count'].tolist() == [0, 1, 2, 2]
        assert s1['social_flag'].tolist() == [0, 1, 1, 1]

    def test_item_not_in_data(self, raw_survey_rounds, social):
        df = raw_survey_rounds.drop(columns=['outings_limited'])
        out = social.fit_transform(df)
        assert out['social_count'].max() <= 1
        assert pd.api.types.is_integer_dtype(out['social_count'])

    def test_default_catalogue(self):
        assert [c.name for c in DEFAULT_COMPOSITES] == [
            'mental_health', 'social_limitation', 'limited_network', 'new_condition',
            'care_access', 'cognition', 'financial_need',
        ]
        # Every default item has a default rule
        table = RecodingTable.from_config(DEFAULT_CONFIG['items'], DEFAULT_CONFIG['default_sentinels'])
        builder = CompositeIndexBuilder(table, DEFAULT_COMPOSITES).fit(pd.DataFrame())
        assert len(builder.get_feature_names_out()) == 14
