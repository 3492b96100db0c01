from .buffer import BatchBuffer, RetryEntry
from .cache import CacheEntry, DefinitionCache
from .client import Client, DefinitionsSource, EventSink, Feature, FeatureSet
from .config import ClientOptions, merge_options
from .evaluation import (
    ConfigSelection,
    ConfigVariant,
    EvaluationResult,
    FeatureDefinitions,
    FeatureEvaluation,
    FlagDefinition,
    evaluate_feature,
    evaluate_flag,
    select_config_variant,
)
from .filters import OPERATORS, RuleFilter, flatten_context, match_filter, parse_filter
from .ratelimit import RateLimiter
from .rollout import ROLLOUT_SCALE, hash_int, in_rollout, rollout_value

__all__ = [
    "BatchBuffer",
    "CacheEntry",
    "Client",
    "ClientOptions",
    "ConfigSelection",
    "ConfigVariant",
    "DefinitionCache",
    "DefinitionsSource",
    "EvaluationResult",
    "EventSink",
    "Feature",
    "FeatureDefinitions",
    "FeatureEvaluation",
    "FeatureSet",
    "FlagDefinition",
    "OPERATORS",
    "RateLimiter",
    "RetryEntry",
    "ROLLOUT_SCALE",
    "RuleFilter",
    "evaluate_feature",
    "evaluate_flag",
    "flatten_context",
    "hash_int",
    "in_rollout",
    "match_filter",
    "merge_options",
    "parse_filter",
    "rollout_value",
    "select_config_variant",
]
