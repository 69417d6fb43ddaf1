"""
Pipeline configuration: shipped defaults plus YAML overrides.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

_MISSING = [-9, -8, -7, -1]

DEFAULT_CONFIG: Dict[str, Any] = {
    'random_seed': 42,
    'columns': {
        'subject_id': 'subject_id',
        'round': 'round',
        'residence_code': 'residence_code',
    },
    'default_sentinels': _MISSING,
    # Declarative item table: item -> rule / sentinel set / cut point
    'items': {
        # PHQ-2 / GAD-2 screener, 1=not at all .. 4=nearly every day
        'little_interest': {'rule': 'at_least', 'cut': 3},
        'feeling_down': {'rule': 'at_least', 'cut': 3},
        'nervous_anxious': {'rule': 'at_least', 'cut': 3},
        'unable_stop_worry': {'rule': 'at_least', 'cut': 3},
        # Activity limitation items, 1=yes 2=no
        'visit_limited': {'rule': 'yes_no'},
        'religious_limited': {'rule': 'yes_no'},
        'clubs_limited': {'rule': 'yes_no'},
        'outings_limited': {'rule': 'yes_no'},
        'no_confidant': {'rule': 'yes_no'},
        'lives_alone': {'rule': 'yes_no'},
        'hospital_stay': {'rule': 'yes_no'},
        'new_heart_attack': {'rule': 'yes_no'},
        'new_stroke': {'rule': 'yes_no'},
        'new_cancer': {'rule': 'yes_no'},
        'hip_fracture': {'rule': 'yes_no'},
        'delayed_care_cost': {'rule': 'yes_no'},
        'no_regular_doctor': {'rule': 'yes_no'},
        # 7 = "don't know" on the diagnosis item only
        'dementia_diagnosis': {'rule': 'yes_no', 'sentinels': _MISSING + [7]},
        # Self-rated memory, 1=excellent .. 5=poor
        'memory_poor': {'rule': 'at_least', 'cut': 4},
        'food_insecure': {'rule': 'yes_no'},
        'utility_unpaid': {'rule': 'yes_no'},
        'skipped_meds_cost': {'rule': 'yes_no'},
        'self_rated_health': {'rule': 'passthrough'},
        # 95 = "don't know how many"
        'num_helpers': {'rule': 'passthrough', 'sentinels': _MISSING + [95]},
    },
    'composites': {
        'mental_health': {'items': ['little_interest', 'feeling_down', 'nervous_anxious', 'unable_stop_worry']},
        'social_limitation': {'items': ['visit_limited', 'religious_limited', 'clubs_limited', 'outings_limited']},
        'limited_network': {'items': ['no_confidant', 'lives_alone']},
        'new_condition': {'items': ['hospital_stay', 'new_heart_attack', 'new_stroke', 'new_cancer', 'hip_fracture']},
        'care_access': {'items': ['delayed_care_cost', 'no_regular_doctor']},
        'cognition': {'items': ['dementia_diagnosis', 'memory_poor']},
        'financial_need': {'items': ['food_insecure', 'utility_unpaid', 'skipped_meds_cost']},
    },
    'cohort': {
        'community_codes': [1, 2, 3],
        'terminal_codes': [4, 5],
        'unknown_codes': [6, 7, 8],
        'min_rounds': 2,
        'missing_label_policy': 'as_community',
        'parallel': False,
        'batch_size': 500,
    },
    'split': {
        'train_fraction': 0.8,
        'stratify': True,
    },
    'features': {
        'last_k_rounds': 3,
        'lag_features': None,
        'cumulative_features': ['mental_health_count'],
        'interaction_pairs': [
            ['mental_health_flag', 'social_limitation_flag'],
            ['cognition_flag', 'financial_need_flag'],
        ],
        'drop_incomplete': True,
    },
    'model': {
        'algorithm': 'random_forest',
        'random_forest': {'n_estimators': 200, 'class_weight': 'balanced', 'min_samples_leaf': 5},
        'logistic_regression': {'class_weight': 'balanced', 'max_iter': 1000},
        'lightgbm': {'objective': 'binary', 'n_estimators': 300, 'learning_rate': 0.05, 'verbose': -1},
        'xgboost': {'n_estimators': 300, 'max_depth': 4, 'learning_rate': 0.05, 'eval_metric': 'aucpr'},
    },
    'preprocessing': {
        'numeric_strategy': 'median',
        'add_indicator': False,
        'scaling': {'enabled': False, 'method': 'standard'},
    },
    'imbalance': {
        'method': 'none',
        'smote': {'sampling_strategy': 0.3, 'k_neighbors': 5},
    },
    'threshold': {
        'start': 0.10,
        'stop': 0.90,
        'step': 0.05,
    },
    'mlflow': {
        'enabled': True,
        'experiment_name': 'panel_cohort',
        'tracking_uri': 'file:./mlruns',
    },
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``.

    Nested dicts are merged key by key; any other value (lists included)
    replaces the base value wholesale.
    """
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Load a YAML config and layer it over :data:`DEFAULT_CONFIG`."""
    if path is None:
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(path, 'r', encoding='utf-8') as f:
        user_config = yaml.safe_load(f) or {}
    if not isinstance(user_config, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(user_config).__name__}")

    logger.info(f"Loaded configuration from {path}")
    return deep_merge(DEFAULT_CONFIG, user_config)
