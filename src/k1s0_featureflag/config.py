"""エンジン設定（pydantic BaseModel）と YAML 読み込み"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .condition import MAX_CONDITION_DEPTH
from .exceptions import FeatureFlagError, FeatureFlagErrorCodes
from .models import EvaluationOptions


class AppSection(BaseModel):
    """アプリケーション基本設定。"""

    name: str
    environment: str = "development"


class EvaluationSection(BaseModel):
    """評価動作の設定。"""

    enabled: bool = True
    qa_mode: bool = False
    url: str = ""
    forced_variations: dict[str, int] = Field(default_factory=dict)


class CatalogSection(BaseModel):
    """カタログ読み込み設定。"""

    path: str = ""
    decryption_key: str = ""
    max_condition_depth: int = Field(default=MAX_CONDITION_DEPTH, ge=1, le=256)


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class EngineConfig(BaseModel):
    """featureflag エンジン設定全体。"""

    app: AppSection
    evaluation: EvaluationSection = Field(default_factory=EvaluationSection)
    catalog: CatalogSection = Field(default_factory=CatalogSection)
    log: LogSection = Field(default_factory=LogSection)

    def evaluation_options(self) -> EvaluationOptions:
        return EvaluationOptions(
            enabled=self.evaluation.enabled,
            qa_mode=self.evaluation.qa_mode,
            forced_variations=dict(self.evaluation.forced_variations),
            url=self.evaluation.url,
        )


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """override を優先して辞書を再帰的にマージする。リストは置換。"""
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CONFIG_READ,
            message=f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CONFIG_PARSE,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CONFIG_PARSE,
            message=f"Config root must be a mapping: {path}",
        )
    return data


def load_config(base_path: Path, env_path: Path | None = None) -> EngineConfig:
    """設定ファイルを読み込んで EngineConfig を返す。

    base_path: ベース設定ファイルパス（必須）
    env_path: 環境別設定ファイルパス（オプション）。存在する場合はベースにマージ。
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = _merge(data, _read_yaml(env_path))
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CONFIG_VALIDATION,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e
