"""フィーチャールール解決のユニットテスト"""

from k1s0_featureflag.condition import parse_condition
from k1s0_featureflag.models import (
    BucketRange,
    DecisionKind,
    EvaluationOptions,
    Experiment,
    ExperimentRule,
    FeatureDefinition,
    Filter,
    ForceRule,
    InvalidRule,
    RolloutRule,
    VariationMeta,
)
from k1s0_featureflag.resolver import resolve
from k1s0_featureflag.sticky import InMemoryStickyBucketStore


def test_default_value_when_no_rules() -> None:
    """ルールがなければデフォルト値。"""
    feature = FeatureDefinition(key="flag", default_value=False)
    decision = resolve(feature, {"id": "user1"})
    assert decision.kind is DecisionKind.DEFAULT
    assert decision.value is False
    assert decision.rule_index is None
    assert decision.feature_key == "flag"


def test_force_rule_with_condition() -> None:
    """条件に一致した場合のみ固定値を返す。"""
    feature = FeatureDefinition(
        key="flag",
        default_value="blue",
        rules=(ForceRule("red", condition=parse_condition({"country": "US"})),),
    )
    decision = resolve(feature, {"country": "US"})
    assert decision.kind is DecisionKind.FORCE
    assert decision.value == "red"
    assert decision.rule_index == 0

    assert resolve(feature, {"country": "JP"}).value == "blue"
    assert resolve(feature, {}).kind is DecisionKind.DEFAULT


def test_first_matching_rule_wins() -> None:
    """最初に該当したルールの結果を返す。"""
    feature = FeatureDefinition(
        key="flag",
        default_value=0,
        rules=(
            ForceRule(1, condition=parse_condition({"plan": "pro"})),
            ForceRule(2),
            ForceRule(3),
        ),
    )
    assert resolve(feature, {"plan": "pro"}).value == 1
    decision = resolve(feature, {"plan": "free"})
    assert decision.value == 2
    assert decision.rule_index == 1


def test_invalid_rule_is_skipped() -> None:
    """不正なルールはスキップされる。"""
    feature = FeatureDefinition(
        key="flag",
        default_value=False,
        rules=(InvalidRule("broken"), ForceRule(True)),
    )
    decision = resolve(feature, {})
    assert decision.value is True
    assert decision.rule_index == 1


def test_force_rule_with_filters() -> None:
    """フィルターの範囲外なら固定値ルールをスキップする。"""
    f = Filter(seed="filter-seed", ranges=(BucketRange(0.0, 0.5),))
    feature = FeatureDefinition(
        key="flag", default_value=False, rules=(ForceRule(True, filters=(f,)),)
    )
    assert resolve(feature, {"id": "user6"}).value is True
    assert resolve(feature, {"id": "user42"}).value is False


def test_rollout_with_range() -> None:
    """ハッシュ値が範囲内のユーザーにのみロールアウトする。"""
    rule = RolloutRule(
        value=True, seed="show-banner", hash_version=2, ranges=(BucketRange(0.0, 0.5),)
    )
    feature = FeatureDefinition(key="show-banner", default_value=False, rules=(rule,))

    decision = resolve(feature, {"id": "user2"})
    assert decision.kind is DecisionKind.ROLLOUT
    assert decision.value is True
    assert decision.bucket == 0.129
    assert decision.hash_value == "user2"

    decision = resolve(feature, {"id": "user42"})
    assert decision.kind is DecisionKind.DEFAULT
    assert decision.value is False


def test_rollout_range_boundaries() -> None:
    """範囲は開始を含み終了を含まない。"""
    rule = RolloutRule(value=True, seed="show-banner", ranges=(BucketRange(0.0, 0.5),))
    feature = FeatureDefinition(key="show-banner", default_value=False, rules=(rule,))
    assert resolve(feature, {"id": "u1012"}).value is True
    assert resolve(feature, {"id": "u806"}).value is False


def test_rollout_with_coverage_is_inclusive() -> None:
    """coverage はハッシュ値が coverage 以下のユーザーを含む。"""
    rule = RolloutRule(value=True, seed="show-banner", coverage=0.5)
    feature = FeatureDefinition(key="show-banner", default_value=False, rules=(rule,))
    assert resolve(feature, {"id": "u806"}).value is True
    assert resolve(feature, {"id": "user8"}).value is True
    assert resolve(feature, {"id": "user42"}).value is False


def test_rollout_zero_coverage() -> None:
    """coverage 0 でもハッシュ値 0 のユーザーは含まれる。"""
    rule = RolloutRule(value=True, seed="show-banner", coverage=0.0)
    feature = FeatureDefinition(key="show-banner", default_value=False, rules=(rule,))
    assert resolve(feature, {"id": "u1012"}).value is True
    assert resolve(feature, {"id": "user8"}).value is False


def test_rollout_without_hash_attribute_is_skipped() -> None:
    """ハッシュ属性がなければロールアウトをスキップする。"""
    rule = RolloutRule(value=True, seed="show-banner", coverage=1.0)
    feature = FeatureDefinition(key="show-banner", default_value=False, rules=(rule,))
    assert resolve(feature, {"country": "US"}).kind is DecisionKind.DEFAULT


def test_experiment_rule() -> None:
    """実験ルールは割り当てたバリエーションの値を返す。"""
    exp = Experiment(key="exp-1", variations=("a", "b"))
    feature = FeatureDefinition(key="flag", default_value="z", rules=(ExperimentRule(exp),))
    decision = resolve(feature, {"id": "user1"})
    assert decision.kind is DecisionKind.EXPERIMENT
    assert decision.value == "a"
    assert decision.experiment_key == "exp-1"
    assert decision.variation_index == 0
    assert decision.hash_value == "user1"
    assert decision.bucket == 0.302


def test_experiment_rule_not_included_falls_through() -> None:
    """割当対象外の場合は次のルールへ進む。"""
    exp = Experiment(key="exp-1", variations=("a", "b"), weights=(0.3, 0.3))
    feature = FeatureDefinition(
        key="flag",
        default_value="z",
        rules=(ExperimentRule(exp), ForceRule("fallback")),
    )
    decision = resolve(feature, {"id": "user2"})
    assert decision.kind is DecisionKind.FORCE
    assert decision.value == "fallback"


def test_experiment_rule_condition() -> None:
    """ルール条件に一致しない場合は実験を行わない。"""
    exp = Experiment(key="exp-1", variations=("a", "b"))
    rule = ExperimentRule(exp, condition=parse_condition({"beta": True}))
    feature = FeatureDefinition(key="flag", default_value="z", rules=(rule,))
    assert resolve(feature, {"id": "user1", "beta": True}).value == "a"
    assert resolve(feature, {"id": "user1"}).value == "z"


def test_passthrough_variation_falls_through() -> None:
    """passthrough のバリエーションは次のルールへ進む。"""
    exp = Experiment(
        key="exp-1",
        variations=("holdout", "b"),
        meta=(VariationMeta(key="holdout", passthrough=True), VariationMeta(key="b")),
    )
    feature = FeatureDefinition(key="flag", default_value="z", rules=(ExperimentRule(exp),))
    assert resolve(feature, {"id": "user1"}).kind is DecisionKind.DEFAULT
    assert resolve(feature, {"id": "user42"}).value == "b"


def test_forced_variation_decision() -> None:
    """強制バリエーションは FORCED_VARIATION になる。"""
    exp = Experiment(key="exp-1", variations=("a", "b"))
    feature = FeatureDefinition(key="flag", default_value="z", rules=(ExperimentRule(exp),))
    options = EvaluationOptions(forced_variations={"exp-1": 1})
    decision = resolve(feature, {"id": "user1"}, options=options)
    assert decision.kind is DecisionKind.FORCED_VARIATION
    assert decision.value == "b"


def test_sticky_bucket_decision() -> None:
    """スティッキーバケットによる割当が Decision に反映されること。"""
    store = InMemoryStickyBucketStore()
    store.set("exp-1", "user1", 1)
    exp = Experiment(key="exp-1", variations=("a", "b"))
    feature = FeatureDefinition(key="flag", default_value="z", rules=(ExperimentRule(exp),))
    decision = resolve(feature, {"id": "user1"}, store)
    assert decision.value == "b"
    assert decision.sticky_bucket_used is True
    assert decision.bucket is None


def test_non_mapping_attributes() -> None:
    """属性が辞書でなくても例外にならないこと。"""
    exp = Experiment(key="exp-1", variations=("a", "b"))
    feature = FeatureDefinition(
        key="flag",
        default_value="z",
        rules=(
            ForceRule("x", condition=parse_condition({"a": 1})),
            RolloutRule(value="y", seed="flag", coverage=1.0),
            ExperimentRule(exp),
        ),
    )
    decision = resolve(feature, None)
    assert decision.kind is DecisionKind.DEFAULT
    assert decision.value == "z"
