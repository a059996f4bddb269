"""フィーチャーカタログ読み込みのユニットテスト"""

import json
from pathlib import Path

import pytest
from k1s0_featureflag.catalog import Catalog, decrypt_payload, load_catalog, parse_catalog
from k1s0_featureflag.exceptions import FeatureFlagError, FeatureFlagErrorCodes
from k1s0_featureflag.models import FeatureDefinition, ForceRule, InvalidRule, RolloutRule

# {"flag":{"defaultValue":true}} を AES-128-CBC で暗号化したもの
DECRYPTION_KEY = "MDEyMzQ1Njc4OWFiY2RlZg=="
ENCRYPTED_FEATURES = "ZmVkY2JhOTg3NjU0MzIxMA==.wcASSC6jYdrNLEeLl54D409xJFWg6M0H04Bqs6J31r8="

CATALOG_YAML = """\
features:
  show-banner:
    defaultValue: false
    rules:
      - force: true
        range: [0, 0.5]
  color:
    defaultValue: blue
"""


def test_catalog_is_read_only() -> None:
    """カタログは読み取り専用のマップ。"""
    catalog = Catalog({"a": FeatureDefinition(key="a")})
    assert "a" in catalog
    assert "b" not in catalog
    assert len(catalog) == 1
    assert list(catalog) == ["a"]
    assert catalog.get("b") is None
    with pytest.raises(TypeError):
        catalog.features["b"] = FeatureDefinition(key="b")  # type: ignore[index]


def test_empty_catalog() -> None:
    """引数なしで空のカタログ。"""
    assert len(Catalog()) == 0


def test_parse_catalog() -> None:
    """features 形式のペイロード。"""
    catalog = parse_catalog(
        {
            "features": {
                "show-banner": {
                    "defaultValue": False,
                    "rules": [{"force": True, "range": [0, 0.5]}],
                }
            },
            "dateUpdated": "2024-01-01T00:00:00Z",
        }
    )
    feature = catalog.get("show-banner")
    assert feature is not None
    assert feature.default_value is False
    assert isinstance(feature.rules[0], RolloutRule)


def test_parse_bare_feature_mapping() -> None:
    """フィーチャーキーをキーとする辞書そのものも受け付ける。"""
    catalog = parse_catalog({"flag": {"defaultValue": 1, "rules": [{"force": 2}]}})
    feature = catalog.get("flag")
    assert feature is not None
    assert isinstance(feature.rules[0], ForceRule)


def test_parse_ignores_unknown_fields() -> None:
    """未知のフィールドは無視される。"""
    catalog = parse_catalog(
        {"features": {"flag": {"defaultValue": 1, "project": "p1"}}, "sdkVersion": "1"}
    )
    assert "flag" in catalog


def test_parse_keeps_invalid_rules() -> None:
    """不正なルールがあってもカタログ全体は読み込めること。"""
    catalog = parse_catalog({"features": {"flag": {"rules": [{"nope": 1}, "x"]}}})
    feature = catalog.get("flag")
    assert feature is not None
    assert all(isinstance(rule, InvalidRule) for rule in feature.rules)


@pytest.mark.parametrize(
    "payload",
    [
        [],
        "features",
        {"features": []},
        {"features": {"flag": "on"}},
        {"features": {"flag": {"rules": "x"}}},
    ],
)
def test_parse_invalid_payload(payload: object) -> None:
    """構造が不正なペイロードは CATALOG_VALIDATION_ERROR。"""
    with pytest.raises(FeatureFlagError) as exc_info:
        parse_catalog(payload)
    assert exc_info.value.code == FeatureFlagErrorCodes.CATALOG_VALIDATION


def test_decrypt_payload() -> None:
    """暗号化されたフィーチャー定義の復号。"""
    plaintext = decrypt_payload(ENCRYPTED_FEATURES, DECRYPTION_KEY)
    assert json.loads(plaintext) == {"flag": {"defaultValue": True}}


@pytest.mark.parametrize(
    "encrypted",
    ["no-separator", "!!!.@@@", "ZmVkY2JhOTg3NjU0MzIxMA==.AAAA"],
)
def test_decrypt_payload_failure(encrypted: str) -> None:
    """不正な暗号文は CATALOG_DECRYPT_ERROR。"""
    with pytest.raises(FeatureFlagError) as exc_info:
        decrypt_payload(encrypted, DECRYPTION_KEY)
    assert exc_info.value.code == FeatureFlagErrorCodes.CATALOG_DECRYPT


def test_parse_encrypted_catalog() -> None:
    """encryptedFeatures を復号して読み込む。"""
    catalog = parse_catalog({"encryptedFeatures": ENCRYPTED_FEATURES}, DECRYPTION_KEY)
    feature = catalog.get("flag")
    assert feature is not None
    assert feature.default_value is True


def test_parse_encrypted_catalog_without_key() -> None:
    """復号鍵がなければ CATALOG_DECRYPT_ERROR。"""
    with pytest.raises(FeatureFlagError) as exc_info:
        parse_catalog({"encryptedFeatures": ENCRYPTED_FEATURES})
    assert exc_info.value.code == FeatureFlagErrorCodes.CATALOG_DECRYPT


def test_load_yaml_catalog(tmp_path: Path) -> None:
    """YAML ファイルからの読み込み。"""
    path = tmp_path / "features.yaml"
    path.write_text(CATALOG_YAML)
    catalog = load_catalog(path)
    assert len(catalog) == 2
    color = catalog.get("color")
    assert color is not None
    assert color.default_value == "blue"


def test_load_json_catalog(tmp_path: Path) -> None:
    """JSON ファイルからの読み込み。"""
    path = tmp_path / "features.json"
    path.write_text(json.dumps({"features": {"flag": {"defaultValue": 3}}}))
    catalog = load_catalog(path)
    flag = catalog.get("flag")
    assert flag is not None
    assert flag.default_value == 3


def test_load_empty_yaml_catalog(tmp_path: Path) -> None:
    """空の YAML ファイルは空のカタログ。"""
    path = tmp_path / "features.yaml"
    path.write_text("")
    assert len(load_catalog(path)) == 0


def test_load_encrypted_catalog(tmp_path: Path) -> None:
    """暗号化されたカタログファイルの読み込み。"""
    path = tmp_path / "features.json"
    path.write_text(json.dumps({"encryptedFeatures": ENCRYPTED_FEATURES}))
    catalog = load_catalog(path, DECRYPTION_KEY)
    assert "flag" in catalog


def test_load_missing_file(tmp_path: Path) -> None:
    """存在しないファイルは CATALOG_READ_ERROR。"""
    with pytest.raises(FeatureFlagError) as exc_info:
        load_catalog(tmp_path / "missing.yaml")
    assert exc_info.value.code == FeatureFlagErrorCodes.CATALOG_READ


def test_load_invalid_json(tmp_path: Path) -> None:
    """不正な JSON は CATALOG_PARSE_ERROR。"""
    path = tmp_path / "features.json"
    path.write_text("{not json")
    with pytest.raises(FeatureFlagError) as exc_info:
        load_catalog(path)
    assert exc_info.value.code == FeatureFlagErrorCodes.CATALOG_PARSE


def test_load_invalid_yaml(tmp_path: Path) -> None:
    """不正な YAML は CATALOG_PARSE_ERROR。"""
    path = tmp_path / "features.yaml"
    path.write_text("features: {invalid: yaml: content:\n")
    with pytest.raises(FeatureFlagError) as exc_info:
        load_catalog(path)
    assert exc_info.value.code == FeatureFlagErrorCodes.CATALOG_PARSE
