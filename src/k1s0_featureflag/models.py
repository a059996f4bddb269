"""featureflag データモデル"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

from .condition import Condition


@dataclass(frozen=True)
class BucketRange:
    """ハッシュ空間上の半開区間 [start, end)。"""

    start: float
    end: float


@dataclass(frozen=True)
class Namespace:
    """実験の相互排他に使う名前空間。"""

    id: str
    range_start: float
    range_end: float


@dataclass(frozen=True)
class Filter:
    """ハッシュ範囲フィルター。ranges のいずれにも含まれなければ除外。"""

    seed: str
    ranges: tuple[BucketRange, ...]
    attribute: str = "id"
    hash_version: int = 2


@dataclass(frozen=True)
class VariationMeta:
    """バリエーションのメタ情報。"""

    key: str | None = None
    name: str | None = None
    passthrough: bool = False


@dataclass(frozen=True)
class Experiment:
    """実験定義。"""

    key: str
    variations: tuple[Any, ...]
    weights: tuple[float, ...] | None = None
    coverage: float | None = None
    ranges: tuple[BucketRange, ...] = ()
    seed: str | None = None
    hash_attribute: str = "id"
    hash_version: int = 1
    namespace: Namespace | None = None
    filters: tuple[Filter, ...] = ()
    meta: tuple[VariationMeta, ...] = ()
    force: int | None = None
    active: bool = True
    condition: Condition | None = None
    name: str | None = None
    phase: str | None = None


@dataclass(frozen=True)
class ForceRule:
    """条件に一致すれば固定値を返すルール。"""

    value: Any
    condition: Condition | None = None
    filters: tuple[Filter, ...] = ()


@dataclass(frozen=True)
class RolloutRule:
    """ハッシュ値が範囲内のユーザーにだけ固定値を返すルール。

    ranges が空の場合は ``hash <= coverage`` で判定する。
    """

    value: Any
    seed: str
    hash_attribute: str = "id"
    hash_version: int = 1
    ranges: tuple[BucketRange, ...] = ()
    coverage: float | None = None
    condition: Condition | None = None
    filters: tuple[Filter, ...] = ()


@dataclass(frozen=True)
class ExperimentRule:
    """実験のバリエーション値を返すルール。"""

    experiment: Experiment
    condition: Condition | None = None


@dataclass(frozen=True)
class InvalidRule:
    """解析できなかったルール。評価時は常にスキップされる。"""

    reason: str


Rule = Union[ForceRule, RolloutRule, ExperimentRule, InvalidRule]


@dataclass(frozen=True)
class FeatureDefinition:
    """フィーチャー定義。rules は定義順に評価される。"""

    key: str
    default_value: Any = None
    rules: tuple[Rule, ...] = ()


class DecisionKind(str, Enum):
    """評価結果の種別。値は GrowthBook の source 名に合わせる。"""

    NOT_FOUND = "unknownFeature"
    DEFAULT = "defaultValue"
    FORCE = "force"
    ROLLOUT = "rollout"
    EXPERIMENT = "experiment"
    FORCED_VARIATION = "forcedVariation"


@dataclass
class AssignmentResult:
    """実験割当の結果。"""

    included: bool
    variation_index: int | None = None
    decision_kind: DecisionKind | None = None
    value: Any = None
    hash_attribute: str = "id"
    hash_value: str | None = None
    bucket: float | None = None
    hash_used: bool = False
    sticky_bucket_used: bool = False
    variation_key: str | None = None
    variation_name: str | None = None
    passthrough: bool = False


def _is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


def detach_value(value: Any) -> Any:
    """カタログが保持する値を呼び出し元へ渡すためのコピーを返す。スカラーはそのまま。"""
    if isinstance(value, (dict, list)):
        return copy.deepcopy(value)
    return value


@dataclass
class Decision:
    """フィーチャー評価結果。"""

    feature_key: str
    kind: DecisionKind
    value: Any = None
    rule_index: int | None = None
    experiment_key: str | None = None
    variation_index: int | None = None
    hash_value: str | None = None
    bucket: float | None = None
    sticky_bucket_used: bool = False

    @classmethod
    def not_found(cls, feature_key: str) -> Decision:
        return cls(feature_key=feature_key, kind=DecisionKind.NOT_FOUND)

    @property
    def found(self) -> bool:
        return self.kind is not DecisionKind.NOT_FOUND

    @property
    def on(self) -> bool:
        return _is_truthy(self.value)

    @property
    def off(self) -> bool:
        return not self.on


@dataclass(frozen=True)
class EvaluationOptions:
    """評価時の動作オプション。

    enabled: False の場合、実験には誰も割り当てない
    qa_mode: True の場合、ハッシュ・スティッキーによる割当を行わない
    forced_variations: 実験キー -> 強制バリエーション番号
    url: クエリ文字列による強制バリエーションの判定に使う URL
    """

    enabled: bool = True
    qa_mode: bool = False
    forced_variations: Mapping[str, int] = field(default_factory=dict)
    url: str = ""
