"""k1s0 featureflag library."""

from .assigner import assign
from .catalog import Catalog, decrypt_payload, load_catalog, parse_catalog
from .condition import eval_condition, matches, parse_condition
from .config import EngineConfig, load_config
from .evaluator import FeatureEvaluator, TrackingCallback, evaluate
from .exceptions import ConditionError, FeatureFlagError, FeatureFlagErrorCodes
from .hashing import hash_value
from .logger import configure_logging, new_logger
from .models import (
    AssignmentResult,
    BucketRange,
    Decision,
    DecisionKind,
    EvaluationOptions,
    Experiment,
    ExperimentRule,
    FeatureDefinition,
    Filter,
    ForceRule,
    InvalidRule,
    Namespace,
    RolloutRule,
    VariationMeta,
)
from .resolver import resolve
from .sticky import InMemoryStickyBucketStore, StickyBucketStore

__all__ = [
    "AssignmentResult",
    "BucketRange",
    "Catalog",
    "ConditionError",
    "Decision",
    "DecisionKind",
    "EngineConfig",
    "EvaluationOptions",
    "Experiment",
    "ExperimentRule",
    "FeatureDefinition",
    "FeatureEvaluator",
    "FeatureFlagError",
    "FeatureFlagErrorCodes",
    "Filter",
    "ForceRule",
    "InMemoryStickyBucketStore",
    "InvalidRule",
    "Namespace",
    "RolloutRule",
    "StickyBucketStore",
    "TrackingCallback",
    "VariationMeta",
    "assign",
    "configure_logging",
    "decrypt_payload",
    "eval_condition",
    "evaluate",
    "hash_value",
    "load_catalog",
    "load_config",
    "matches",
    "new_logger",
    "parse_catalog",
    "parse_condition",
    "resolve",
]
