"""Test configuration and fixtures."""

import copy
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from panel_cohort.pipeline.recoding import RecodingTable
from panel_cohort.utils.config import DEFAULT_CONFIG


@pytest.fixture
def item_table():
    """Small recoding table covering every rule type."""
    return RecodingTable.from_config({
        'feeling_down': {'rule': 'at_least', 'cut': 3},
        'visit_limited': {'rule': 'yes_no'},
        'outings_limited': {'rule': 'yes_no'},
        'dementia_diagnosis': {'rule': 'yes_no', 'sentinels': [-9, -8, -7, -1, 7]},
        'num_helpers': {'rule': 'passthrough', 'sentinels': [-9, -8, -7, -1, 95]},
    })


@pytest.fixture
def raw_survey_rounds():
    """Hand-built raw rounds for four subjects.

    S1 enters care at round 3, S2 stays in the community, S3 has a single
    round and S4 has an unknown-status round between two community rounds.
    """
    rows = [
        # subject, round, residence, feeling_down, visit_limited, outings_limited, dementia, helpers
        ('S1', 1, 1, 1, 2, 2, 2, 0),
        ('S1', 2, 1, 3, 1, -8, 2, 1),
        ('S1', 3, 4, 4, 1, 1, 7, 2),
        ('S1', 4, 4, 4, 1, 1, 1, 3),
        ('S2', 1, 1, 2, 2, 2, 2, 0),
        ('S2', 2, 2, -9, 2, 1, 2, 95),
        ('S2', 3, 1, 1, -1, 2, 2, 1),
        ('S3', 5, 1, 2, 2, 2, 2, 0),
        ('S4', 1, 1, 2, 2, 2, 2, 0),
        ('S4', 2, 7, 2, 1, 2, 2, 0),
        ('S4', 3, 1, 3, 1, 2, 2, 1),
    ]
    columns = ['subject_id', 'round', 'residence_code', 'feeling_down', 'visit_limited',
               'outings_limited', 'dementia_diagnosis', 'num_helpers']
    return pd.DataFrame(rows, columns=columns)


@pytest.fixture
def cohort_table():
    """Labeled cohort table shaped like the labeler output."""
    np.random.seed(42)

    data = []
    for subject in range(40):
        n_rounds = 3 + subject % 3
        terminal = subject % 4 == 0
        for r in range(1, n_rounds + 1):
            data.append({
                'subject_id': f'SP{subject:04d}',
                'round': r + subject % 2,
                'mental_health_count': np.random.randint(0, 5),
                'mental_health_flag': np.random.choice([0, 1]),
                'social_limitation_flag': np.random.choice([0, 1]),
                'label': int(terminal and r == n_rounds),
            })

    return pd.DataFrame(data)


@pytest.fixture
def temp_directory():
    """Create temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def sample_config():
    """Default configuration with tracking off and a small model."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config['mlflow']['enabled'] = False
    config['model']['algorithm'] = 'random_forest'
    config['model']['random_forest'] = {'n_estimators': 20, 'class_weight': 'balanced', 'min_samples_leaf': 2}
    return config
