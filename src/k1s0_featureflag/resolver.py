"""フィーチャールールの解決

ルールは定義順に評価し、最初に値を返したルールの結果を採用する。
どのルールも該当しなければフィーチャーのデフォルト値を返す。
"""

from __future__ import annotations

from typing import Any

import structlog

from .assigner import assign, hash_attribute_value, is_filtered_out
from .condition import matches
from .hashing import hash_value, in_range
from .models import (
    Decision,
    DecisionKind,
    EvaluationOptions,
    ExperimentRule,
    FeatureDefinition,
    ForceRule,
    InvalidRule,
    RolloutRule,
    Rule,
    detach_value,
)
from .sticky import StickyBucketStore

logger = structlog.stdlib.get_logger(__name__)


def _apply_rollout(
    feature: FeatureDefinition, index: int, rule: RolloutRule, attributes: Any
) -> Decision | None:
    value = hash_attribute_value(attributes, rule.hash_attribute)
    if value is None:
        return None
    n = hash_value(rule.seed, value, rule.hash_version)
    if n is None:
        return None
    if rule.ranges:
        included = any(in_range(n, r) for r in rule.ranges)
    else:
        included = rule.coverage is not None and n <= rule.coverage
    if not included:
        return None
    return Decision(
        feature_key=feature.key,
        kind=DecisionKind.ROLLOUT,
        value=detach_value(rule.value),
        rule_index=index,
        hash_value=value,
        bucket=n,
    )


def _apply_rule(
    feature: FeatureDefinition,
    index: int,
    rule: Rule,
    attributes: Any,
    sticky_store: StickyBucketStore | None,
    options: EvaluationOptions | None,
) -> Decision | None:
    if isinstance(rule, InvalidRule):
        logger.debug("rule_skipped", feature_key=feature.key, rule_index=index, reason="invalid")
        return None
    if rule.condition is not None and not matches(rule.condition, attributes):
        logger.debug("rule_skipped", feature_key=feature.key, rule_index=index, reason="condition")
        return None

    if isinstance(rule, ForceRule):
        if is_filtered_out(rule.filters, attributes):
            return None
        return Decision(
            feature_key=feature.key,
            kind=DecisionKind.FORCE,
            value=detach_value(rule.value),
            rule_index=index,
        )

    if isinstance(rule, RolloutRule):
        if is_filtered_out(rule.filters, attributes):
            return None
        decision = _apply_rollout(feature, index, rule, attributes)
        if decision is None:
            logger.debug("rule_skipped", feature_key=feature.key, rule_index=index, reason="rollout")
        return decision

    if isinstance(rule, ExperimentRule):
        result = assign(rule.experiment, attributes, sticky_store, options)
        if not result.included or result.passthrough:
            return None
        return Decision(
            feature_key=feature.key,
            kind=result.decision_kind or DecisionKind.EXPERIMENT,
            value=result.value,
            rule_index=index,
            experiment_key=rule.experiment.key,
            variation_index=result.variation_index,
            hash_value=result.hash_value,
            bucket=result.bucket,
            sticky_bucket_used=result.sticky_bucket_used,
        )

    logger.warning("rule_skipped", feature_key=feature.key, rule_index=index, reason="unknown_kind")
    return None


def resolve(
    feature: FeatureDefinition,
    attributes: Any,
    sticky_store: StickyBucketStore | None = None,
    options: EvaluationOptions | None = None,
) -> Decision:
    """フィーチャー定義のルールを順に評価して Decision を返す。例外は送出しない。"""
    for index, rule in enumerate(feature.rules):
        decision = _apply_rule(feature, index, rule, attributes, sticky_store, options)
        if decision is not None:
            return decision
    return Decision(
        feature_key=feature.key,
        kind=DecisionKind.DEFAULT,
        value=detach_value(feature.default_value),
    )
