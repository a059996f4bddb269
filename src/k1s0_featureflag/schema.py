"""GrowthBook フィーチャー定義スキーマ（pydantic BaseModel）

フィールド名は GrowthBook の JSON 形式（camelCase）に合わせる。未知のフィールドは無視する。
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .condition import MAX_CONDITION_DEPTH, parse_condition
from .exceptions import ConditionError
from .models import (
    BucketRange,
    Experiment,
    ExperimentRule,
    FeatureDefinition,
    Filter,
    ForceRule,
    InvalidRule,
    Namespace,
    RolloutRule,
    Rule,
    VariationMeta,
)

logger = structlog.stdlib.get_logger(__name__)


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class VariationMetaSchema(_WireModel):
    """バリエーションメタ情報。"""

    key: str | None = None
    name: str | None = None
    passthrough: bool = False


class FilterSchema(_WireModel):
    """ハッシュ範囲フィルター。"""

    seed: str = ""
    ranges: list[tuple[float, float]] = Field(default_factory=list)
    hash_version: int = Field(default=2, alias="hashVersion")
    attribute: str = "id"


class FeatureRuleSchema(_WireModel):
    """フィーチャールール。force / variations の有無で種別が決まる。"""

    condition: dict[str, Any] | None = None
    force: Any = None
    coverage: float | None = None
    range: tuple[float, float] | None = None
    ranges: list[tuple[float, float]] | None = None
    variations: list[Any] | None = None
    weights: list[float] | None = None
    key: str | None = None
    namespace: tuple[str, float, float] | None = None
    hash_attribute: str | None = Field(default=None, alias="hashAttribute")
    hash_version: int | None = Field(default=None, alias="hashVersion")
    seed: str | None = None
    meta: list[VariationMetaSchema] | None = None
    filters: list[FilterSchema] | None = None
    name: str | None = None
    phase: str | None = None
    active: bool = True


class FeatureSchema(_WireModel):
    """フィーチャー定義。rules はルールごとに個別に検証する。"""

    default_value: Any = Field(default=None, alias="defaultValue")
    rules: list[Any] | None = None


class CatalogSchema(_WireModel):
    """フィーチャーカタログ全体。"""

    features: dict[str, FeatureSchema] = Field(default_factory=dict)
    encrypted_features: str | None = Field(default=None, alias="encryptedFeatures")
    date_updated: str | None = Field(default=None, alias="dateUpdated")


def _ranges(raw: list[tuple[float, float]] | None) -> tuple[BucketRange, ...]:
    return tuple(BucketRange(start, end) for start, end in raw or ())


def _filters(raw: list[FilterSchema] | None) -> tuple[Filter, ...]:
    return tuple(
        Filter(
            seed=f.seed,
            ranges=_ranges(f.ranges),
            attribute=f.attribute or "id",
            hash_version=f.hash_version,
        )
        for f in raw or ()
    )


def compile_rule(
    raw: Any, feature_key: str, max_condition_depth: int = MAX_CONDITION_DEPTH
) -> Rule:
    """ワイヤー形式のルールを型付きルールに変換する。

    不正なルールは例外にせず InvalidRule を返す。
    """
    if not isinstance(raw, dict):
        return InvalidRule("rule must be an object")
    try:
        schema = FeatureRuleSchema.model_validate(raw)
    except ValidationError as e:
        return InvalidRule(f"invalid rule fields: {e.error_count()} error(s)")

    condition = None
    if schema.condition:
        try:
            condition = parse_condition(schema.condition, max_condition_depth)
        except ConditionError as e:
            return InvalidRule(str(e))

    filters = _filters(schema.filters)
    hash_attribute = schema.hash_attribute or "id"
    hash_version = schema.hash_version or 1

    if schema.force is not None:
        if schema.range is None and schema.coverage is None:
            return ForceRule(value=schema.force, condition=condition, filters=filters)
        return RolloutRule(
            value=schema.force,
            seed=schema.seed or feature_key,
            hash_attribute=hash_attribute,
            hash_version=hash_version,
            ranges=_ranges([schema.range] if schema.range else None),
            coverage=schema.coverage,
            condition=condition,
            filters=filters,
        )

    if schema.variations is not None:
        experiment = Experiment(
            key=schema.key or feature_key,
            variations=tuple(schema.variations),
            weights=tuple(schema.weights) if schema.weights is not None else None,
            coverage=schema.coverage,
            ranges=_ranges(schema.ranges),
            seed=schema.seed,
            hash_attribute=hash_attribute,
            hash_version=hash_version,
            namespace=Namespace(*schema.namespace) if schema.namespace else None,
            filters=filters,
            meta=tuple(
                VariationMeta(key=m.key, name=m.name, passthrough=m.passthrough)
                for m in schema.meta or ()
            ),
            active=schema.active,
            name=schema.name,
            phase=schema.phase,
        )
        return ExperimentRule(experiment=experiment, condition=condition)

    return InvalidRule("rule has neither force nor variations")


def compile_feature(
    key: str, schema: FeatureSchema, max_condition_depth: int = MAX_CONDITION_DEPTH
) -> FeatureDefinition:
    """フィーチャー定義を型付きに変換する。不正なルールは InvalidRule として残す。"""
    rules = tuple(
        compile_rule(raw, key, max_condition_depth) for raw in schema.rules or ()
    )
    for index, rule in enumerate(rules):
        if isinstance(rule, InvalidRule):
            logger.warning(
                "invalid_rule", feature_key=key, rule_index=index, reason=rule.reason
            )
    return FeatureDefinition(key=key, default_value=schema.default_value, rules=rules)
