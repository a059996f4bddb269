"""フィーチャー評価の公開 API"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

import structlog

from .assigner import assign
from .catalog import Catalog, load_catalog
from .config import EngineConfig
from .models import AssignmentResult, Decision, DecisionKind, EvaluationOptions, Experiment
from .resolver import resolve
from .sticky import StickyBucketStore

logger = structlog.stdlib.get_logger(__name__)


class TrackingCallback(Protocol):
    """実験の表示（割当）を通知するコールバック。"""

    def __call__(
        self,
        feature_key: str | None,
        experiment_key: str,
        variation_index: int,
        hash_value: str | None,
    ) -> None: ...


def _track(
    callback: TrackingCallback,
    feature_key: str | None,
    experiment_key: str,
    variation_index: int,
    hash_value: str | None,
) -> None:
    try:
        callback(feature_key, experiment_key, variation_index, hash_value)
    except Exception:
        logger.warning(
            "tracking_callback_failed",
            feature_key=feature_key,
            experiment_key=experiment_key,
            exc_info=True,
        )


def evaluate(
    catalog: Catalog,
    feature_key: str,
    attributes: Any,
    sticky_store: StickyBucketStore | None = None,
    tracking_callback: TrackingCallback | None = None,
    options: EvaluationOptions | None = None,
) -> Decision:
    """フィーチャーを評価する。

    未知のキーは DecisionKind.NOT_FOUND を返す。実験による割当で確定した場合のみ
    tracking_callback を 1 回呼び出す。
    """
    feature = catalog.get(feature_key)
    if feature is None:
        logger.debug("unknown_feature", feature_key=feature_key)
        return Decision.not_found(feature_key)

    decision = resolve(feature, attributes, sticky_store, options)
    if (
        decision.kind is DecisionKind.EXPERIMENT
        and tracking_callback is not None
        and decision.experiment_key is not None
        and decision.variation_index is not None
    ):
        _track(
            tracking_callback,
            feature_key,
            decision.experiment_key,
            decision.variation_index,
            decision.hash_value,
        )
    return decision


class FeatureEvaluator:
    """カタログ・スティッキーストア・トラッキングをまとめた評価クライアント。

    グローバル状態を持たないため、異なるカタログを持つインスタンスを並行して使える。
    """

    def __init__(
        self,
        catalog: Catalog | None = None,
        sticky_store: StickyBucketStore | None = None,
        tracking_callback: TrackingCallback | None = None,
        options: EvaluationOptions | None = None,
    ) -> None:
        self._catalog = catalog if catalog is not None else Catalog()
        self._sticky_store = sticky_store
        self._tracking_callback = tracking_callback
        self._options = options or EvaluationOptions()

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        sticky_store: StickyBucketStore | None = None,
        tracking_callback: TrackingCallback | None = None,
    ) -> FeatureEvaluator:
        """設定からカタログを読み込んで評価クライアントを作成する。

        Raises:
            FeatureFlagError: カタログの読み込みに失敗した場合
        """
        catalog = None
        if config.catalog.path:
            catalog = load_catalog(
                Path(config.catalog.path),
                config.catalog.decryption_key or None,
                config.catalog.max_condition_depth,
            )
        return cls(
            catalog=catalog,
            sticky_store=sticky_store,
            tracking_callback=tracking_callback,
            options=config.evaluation_options(),
        )

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    def set_catalog(self, catalog: Catalog) -> None:
        """カタログを丸ごと差し替える。"""
        self._catalog = catalog

    def evaluate(self, feature_key: str, attributes: Any = None) -> Decision:
        return evaluate(
            self._catalog,
            feature_key,
            attributes or {},
            self._sticky_store,
            self._tracking_callback,
            self._options,
        )

    def run(self, experiment: Experiment, attributes: Any = None) -> AssignmentResult:
        """フィーチャーに紐付かないインライン実験を実行する。"""
        result = assign(experiment, attributes or {}, self._sticky_store, self._options)
        if (
            result.included
            and result.decision_kind is DecisionKind.EXPERIMENT
            and result.variation_index is not None
            and self._tracking_callback is not None
        ):
            _track(
                self._tracking_callback,
                None,
                experiment.key,
                result.variation_index,
                result.hash_value,
            )
        return result

    def is_on(self, feature_key: str, attributes: Any = None) -> bool:
        return self.evaluate(feature_key, attributes).on

    def is_off(self, feature_key: str, attributes: Any = None) -> bool:
        return self.evaluate(feature_key, attributes).off

    def get_value(self, feature_key: str, attributes: Any, fallback: Any) -> Any:
        """値が存在しなければ fallback を返す。"""
        value = self.evaluate(feature_key, attributes).value
        return fallback if value is None else value

    def get_bool(self, feature_key: str, attributes: Any, default: bool) -> bool:
        value = self.evaluate(feature_key, attributes).value
        return value if isinstance(value, bool) else default

    def get_str(self, feature_key: str, attributes: Any, default: str) -> str:
        value = self.evaluate(feature_key, attributes).value
        return value if isinstance(value, str) else default

    def get_number(
        self, feature_key: str, attributes: Any, default: int | float
    ) -> int | float:
        value = self.evaluate(feature_key, attributes).value
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return default
        return value

    def get_json(
        self, feature_key: str, attributes: Any, default: dict | list
    ) -> dict | list:
        """オブジェクトまたは配列の値を返す。それ以外は default。"""
        value = self.evaluate(feature_key, attributes).value
        return value if isinstance(value, (dict, list)) else default
