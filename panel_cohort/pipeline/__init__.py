"""Cohort construction and feature components."""

from .recoding import (
    ItemRule,
    RecodingTable,
    SurveyRecoder,
    recode,
    normalize_binary,
)

from .composite import DEFAULT_COMPOSITES, CompositeIndex, CompositeIndexBuilder

from .cohort import (
    CohortDiagnostics,
    CohortLabeler,
    ResidenceCodebook,
    derive_label,
    truncate_and_filter,
)

from .splitting import ParticipantSplitter, reorigin, reorigin_frame

from .feature_engineering import (
    TemporalFeatureEngineer,
    lag1,
    cumulative_mean,
    interaction,
    trim_last_k,
)

from .preprocessing import (
    MissingValueHandler,
    DataValidator,
    DataScaler,
)

__all__ = [
    'ItemRule',
    'RecodingTable',
    'SurveyRecoder',
    'recode',
    'normalize_binary',
    'DEFAULT_COMPOSITES',
    'CompositeIndex',
    'CompositeIndexBuilder',
    'CohortDiagnostics',
    'CohortLabeler',
    'ResidenceCodebook',
    'derive_label',
    'truncate_and_filter',
    'ParticipantSplitter',
    'reorigin',
    'reorigin_frame',
    'TemporalFeatureEngineer',
    'lag1',
    'cumulative_mean',
    'interaction',
    'trim_last_k',
    'MissingValueHandler',
    'DataValidator',
    'DataScaler',
]
