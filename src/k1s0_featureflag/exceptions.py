"""featureflag ライブラリの例外型定義"""

from __future__ import annotations


class FeatureFlagError(Exception):
    """featureflag ライブラリのエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class ConditionError(FeatureFlagError):
    """条件式の構文エラー。評価時には「不一致」として扱われる。"""

    def __init__(self, message: str) -> None:
        super().__init__(FeatureFlagErrorCodes.INVALID_CONDITION, message)


class FeatureFlagErrorCodes:
    """FeatureFlagError のエラーコード定数。"""

    CATALOG_READ: str = "CATALOG_READ_ERROR"
    CATALOG_PARSE: str = "CATALOG_PARSE_ERROR"
    CATALOG_VALIDATION: str = "CATALOG_VALIDATION_ERROR"
    CATALOG_DECRYPT: str = "CATALOG_DECRYPT_ERROR"
    CONFIG_READ: str = "CONFIG_READ_ERROR"
    CONFIG_PARSE: str = "CONFIG_PARSE_ERROR"
    CONFIG_VALIDATION: str = "CONFIG_VALIDATION_ERROR"
    INVALID_CONDITION: str = "INVALID_CONDITION"
