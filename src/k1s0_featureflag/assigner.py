"""実験バリエーションの割当"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import structlog

from .condition import matches
from .hashing import (
    choose_variation,
    get_bucket_ranges,
    get_query_string_override,
    hash_value,
    in_namespace,
    in_range,
)
from .models import (
    AssignmentResult,
    DecisionKind,
    EvaluationOptions,
    Experiment,
    Filter,
    detach_value,
)
from .sticky import StickyBucketStore

logger = structlog.stdlib.get_logger(__name__)

_DEFAULT_OPTIONS = EvaluationOptions()


def hash_attribute_value(attributes: Any, attribute: str) -> str | None:
    """ハッシュに使う属性値を文字列で返す。存在しない・空・非スカラーは None。"""
    if not isinstance(attributes, Mapping):
        return None
    value = attributes.get(attribute)
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return None


def is_filtered_out(filters: Sequence[Filter], attributes: Any) -> bool:
    """いずれかのフィルターの範囲外であれば True。"""
    for f in filters:
        value = hash_attribute_value(attributes, f.attribute)
        if value is None:
            return True
        n = hash_value(f.seed, value, f.hash_version)
        if n is None:
            return True
        if not any(in_range(n, r) for r in f.ranges):
            return True
    return False


def _excluded(experiment: Experiment, attribute_value: str | None) -> AssignmentResult:
    return AssignmentResult(
        included=False,
        hash_attribute=experiment.hash_attribute,
        hash_value=attribute_value,
    )


def _included(
    experiment: Experiment,
    index: int,
    kind: DecisionKind,
    attribute_value: str | None,
    bucket: float | None = None,
    hash_used: bool = False,
    sticky_bucket_used: bool = False,
) -> AssignmentResult:
    if not 0 <= index < len(experiment.variations):
        return _excluded(experiment, attribute_value)
    meta = experiment.meta[index] if index < len(experiment.meta) else None
    return AssignmentResult(
        included=True,
        variation_index=index,
        decision_kind=kind,
        value=detach_value(experiment.variations[index]),
        hash_attribute=experiment.hash_attribute,
        hash_value=attribute_value,
        bucket=bucket,
        hash_used=hash_used,
        sticky_bucket_used=sticky_bucket_used,
        variation_key=meta.key if meta and meta.key else str(index),
        variation_name=meta.name if meta else None,
        passthrough=meta.passthrough if meta else False,
    )


def _read_sticky(
    store: StickyBucketStore, experiment: Experiment, attribute_value: str
) -> int | None:
    try:
        stored = store.get(experiment.key, attribute_value)
    except Exception:
        logger.warning(
            "sticky_bucket_read_failed", experiment_key=experiment.key, exc_info=True
        )
        return None
    if isinstance(stored, bool) or not isinstance(stored, int):
        return None
    if not 0 <= stored < len(experiment.variations):
        logger.debug(
            "sticky_bucket_out_of_range",
            experiment_key=experiment.key,
            variation_index=stored,
        )
        return None
    return stored


def _write_sticky(
    store: StickyBucketStore, experiment: Experiment, attribute_value: str, index: int
) -> None:
    try:
        store.set(experiment.key, attribute_value, index)
    except Exception:
        logger.warning(
            "sticky_bucket_write_failed", experiment_key=experiment.key, exc_info=True
        )


def assign(
    experiment: Experiment,
    attributes: Any,
    sticky_store: StickyBucketStore | None = None,
    options: EvaluationOptions | None = None,
) -> AssignmentResult:
    """ユーザーを実験のバリエーションに割り当てる。

    判定順:
        1. バリエーション 2 未満・無効化時は対象外
        2. URL クエリ / forced_variations による強制
        3. 非アクティブ・ハッシュ属性なしは対象外
        4. experiment.force による強制（ハッシュ計算なし）
        5. フィルター（なければ名前空間）・実験条件
        6. スティッキーバケット（範囲外の番号は無視）
        7. ハッシュによるバケット割当。新規割当はスティッキーストアに書き戻す
    """
    options = options or _DEFAULT_OPTIONS
    key = experiment.key
    num_variations = len(experiment.variations)
    value = hash_attribute_value(attributes, experiment.hash_attribute)

    if num_variations < 2:
        logger.debug("experiment_skipped", experiment_key=key, reason="too_few_variations")
        return _excluded(experiment, value)
    if not options.enabled:
        logger.debug("experiment_skipped", experiment_key=key, reason="disabled")
        return _excluded(experiment, value)

    forced = get_query_string_override(key, options.url, num_variations)
    if forced is None:
        forced = options.forced_variations.get(key)
    if forced is not None:
        logger.debug("variation_forced", experiment_key=key, variation_index=forced)
        return _included(experiment, forced, DecisionKind.FORCED_VARIATION, value)

    if not experiment.active:
        logger.debug("experiment_skipped", experiment_key=key, reason="inactive")
        return _excluded(experiment, value)
    if value is None:
        logger.debug("experiment_skipped", experiment_key=key, reason="missing_hash_attribute")
        return _excluded(experiment, value)

    if experiment.force is not None:
        return _included(experiment, experiment.force, DecisionKind.FORCED_VARIATION, value)

    if experiment.filters:
        if is_filtered_out(experiment.filters, attributes):
            logger.debug("experiment_skipped", experiment_key=key, reason="filtered_out")
            return _excluded(experiment, value)
    elif experiment.namespace is not None and not in_namespace(value, experiment.namespace):
        logger.debug("experiment_skipped", experiment_key=key, reason="namespace")
        return _excluded(experiment, value)

    if experiment.condition is not None and not matches(experiment.condition, attributes):
        logger.debug("experiment_skipped", experiment_key=key, reason="condition")
        return _excluded(experiment, value)

    if options.qa_mode:
        logger.debug("experiment_skipped", experiment_key=key, reason="qa_mode")
        return _excluded(experiment, value)

    if sticky_store is not None:
        stored = _read_sticky(sticky_store, experiment, value)
        if stored is not None:
            return _included(
                experiment, stored, DecisionKind.EXPERIMENT, value, sticky_bucket_used=True
            )

    n = hash_value(experiment.seed or key, value, experiment.hash_version)
    if n is None:
        logger.warning(
            "experiment_skipped",
            experiment_key=key,
            reason="invalid_hash_version",
            hash_version=experiment.hash_version,
        )
        return _excluded(experiment, value)

    ranges = experiment.ranges or get_bucket_ranges(
        num_variations,
        experiment.coverage if experiment.coverage is not None else 1.0,
        experiment.weights,
    )
    index = choose_variation(n, ranges)
    if index < 0:
        logger.debug("experiment_skipped", experiment_key=key, reason="not_in_bucket")
        return _excluded(experiment, value)

    if sticky_store is not None:
        _write_sticky(sticky_store, experiment, value, index)

    logger.debug("variation_assigned", experiment_key=key, variation_index=index)
    return _included(
        experiment, index, DecisionKind.EXPERIMENT, value, bucket=n, hash_used=True
    )
