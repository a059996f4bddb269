"""フィーチャーカタログの読み込み

カタログは評価中に変更されない不変のスナップショット。更新時は丸ごと差し替える。
読み込み時のエラーは FeatureFlagError として呼び出し元に返す（評価時の劣化とは区別する）。
"""

from __future__ import annotations

import binascii
import json
from base64 import b64decode
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

import structlog
import yaml
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from pydantic import ValidationError

from .condition import MAX_CONDITION_DEPTH
from .exceptions import FeatureFlagError, FeatureFlagErrorCodes
from .models import FeatureDefinition
from .schema import CatalogSchema, compile_feature

logger = structlog.stdlib.get_logger(__name__)


class Catalog:
    """フィーチャーキー -> FeatureDefinition の読み取り専用マップ。"""

    def __init__(self, features: Mapping[str, FeatureDefinition] | None = None) -> None:
        self._features: Mapping[str, FeatureDefinition] = MappingProxyType(
            dict(features or {})
        )

    def get(self, feature_key: str) -> FeatureDefinition | None:
        return self._features.get(feature_key)

    @property
    def features(self) -> Mapping[str, FeatureDefinition]:
        return self._features

    def __contains__(self, feature_key: object) -> bool:
        return feature_key in self._features

    def __len__(self) -> int:
        return len(self._features)

    def __iter__(self) -> Iterator[str]:
        return iter(self._features)


def decrypt_payload(encrypted: str, decryption_key: str) -> str:
    """暗号化されたフィーチャー定義を復号する。

    encrypted: "<base64 IV>.<base64 暗号文>"（AES-128-CBC, PKCS7）
    decryption_key: base64 エンコードされた 128bit 鍵

    Raises:
        FeatureFlagError: 復号に失敗した場合
    """
    try:
        iv_text, ciphertext_text = encrypted.split(".", 1)
        key = b64decode(decryption_key, validate=True)
        iv = b64decode(iv_text, validate=True)
        ciphertext = b64decode(ciphertext_text, validate=True)

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(128).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except (ValueError, binascii.Error) as e:
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CATALOG_DECRYPT,
            message=f"Failed to decrypt features: {e}",
            cause=e,
        ) from e


def parse_catalog(
    payload: Any,
    decryption_key: str | None = None,
    max_condition_depth: int = MAX_CONDITION_DEPTH,
) -> Catalog:
    """JSON 互換のペイロードから Catalog を構築する。

    payload は {"features": {...}} / {"encryptedFeatures": "..."} 形式、
    またはフィーチャーキーをキーとする辞書そのもの。

    Raises:
        FeatureFlagError: ペイロードの構造が不正、または復号に失敗した場合
    """
    if not isinstance(payload, Mapping):
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CATALOG_VALIDATION,
            message=f"Catalog must be an object, got {type(payload).__name__}",
        )
    if "features" not in payload and "encryptedFeatures" not in payload:
        payload = {"features": payload}

    try:
        schema = CatalogSchema.model_validate(payload)
    except ValidationError as e:
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CATALOG_VALIDATION,
            message=f"Catalog validation failed: {e}",
            cause=e,
        ) from e

    if schema.encrypted_features is not None:
        if not decryption_key:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.CATALOG_DECRYPT,
                message="Found encrypted features but no decryption key is set",
            )
        decrypted = decrypt_payload(schema.encrypted_features, decryption_key)
        try:
            features = json.loads(decrypted)
        except json.JSONDecodeError as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.CATALOG_PARSE,
                message=f"Failed to parse decrypted features: {e}",
                cause=e,
            ) from e
        return parse_catalog({"features": features}, None, max_condition_depth)

    definitions = {
        key: compile_feature(key, feature, max_condition_depth)
        for key, feature in schema.features.items()
    }
    logger.debug("catalog_parsed", features=len(definitions))
    return Catalog(definitions)


def load_catalog(
    path: Path,
    decryption_key: str | None = None,
    max_condition_depth: int = MAX_CONDITION_DEPTH,
) -> Catalog:
    """JSON / YAML ファイルから Catalog を読み込む。

    Raises:
        FeatureFlagError: 読み込み・解析・検証に失敗した場合
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CATALOG_READ,
            message=f"Failed to read catalog file: {path}",
            cause=e,
        ) from e

    payload: Any
    if path.suffix == ".json":
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.CATALOG_PARSE,
                message=f"Failed to parse JSON: {path}",
                cause=e,
            ) from e
    else:
        try:
            payload = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.CATALOG_PARSE,
                message=f"Failed to parse YAML: {path}",
                cause=e,
            ) from e

    catalog = parse_catalog(payload, decryption_key, max_condition_depth)
    logger.info("catalog_loaded", path=str(path), features=len(catalog))
    return catalog
