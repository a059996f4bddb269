"""属性条件式の解析と評価

条件式は GrowthBook 形式の JSON 文書（MongoDB 風クエリ）で表現される。
``parse_condition`` で不変のノード木に変換し、``matches`` で属性に対して評価する。

- ``$and`` / ``$or`` / ``$nor`` / ``$not`` は短絡評価する
- 存在しない属性を参照する条件は ``$exists`` を除き常に不一致
- 型の異なる値同士は等しくない（真偽値は数値として扱わない）
- 不正な条件式は ``ConditionError`` となり、呼び出し側で「不一致」として扱う
- ``$regex`` の対象が MAX_REGEX_INPUT_LENGTH 文字を超える場合は不一致
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Union

import structlog

from .exceptions import ConditionError

logger = structlog.stdlib.get_logger(__name__)

MAX_CONDITION_DEPTH = 64

# $regex で評価する属性値の最大長
MAX_REGEX_INPUT_LENGTH = 1024

_VERSION_OPERATORS = ("$veq", "$vne", "$vgt", "$vgte", "$vlt", "$vlte")
_COMPARISON_OPERATORS = ("$lt", "$lte", "$gt", "$gte")
_EQUALITY_OPERATORS = ("$eq", "$ne")


@dataclass(frozen=True)
class Literal:
    """値の完全一致。"""

    value: Any


@dataclass(frozen=True)
class Operator:
    """``$gt`` などの単一演算子と解析済みの引数。"""

    name: str
    argument: Any = None


@dataclass(frozen=True)
class OperatorSet:
    """すべての演算子が成立すれば一致。"""

    operators: tuple[Operator, ...]


ValueTest = Union[Literal, OperatorSet]


@dataclass(frozen=True)
class FieldTest:
    """属性パス（ドット区切り）に対する値テスト。"""

    path: tuple[str, ...]
    test: ValueTest


@dataclass(frozen=True)
class AllOf:
    children: tuple["Condition", ...]


@dataclass(frozen=True)
class AnyOf:
    """子が空の場合は一致とみなす。"""

    children: tuple["Condition", ...]


@dataclass(frozen=True)
class Not:
    child: "Condition"


Condition = Union[AllOf, AnyOf, Not, FieldTest]


def parse_condition(raw: Any, max_depth: int = MAX_CONDITION_DEPTH) -> Condition:
    """条件式文書をノード木に変換する。

    Raises:
        ConditionError: 文書が不正、または入れ子が max_depth を超える場合
    """
    return _parse(raw, max_depth, 0)


def _check_depth(max_depth: int, depth: int) -> None:
    if depth > max_depth:
        raise ConditionError(f"condition nesting exceeds max depth {max_depth}")


def _parse(raw: Any, max_depth: int, depth: int) -> Condition:
    _check_depth(max_depth, depth)
    if not isinstance(raw, Mapping):
        raise ConditionError(f"condition must be an object, got {type(raw).__name__}")

    # 結合子は $or, $nor, $and, $not の順に 1 つだけ評価し、同じ階層の他のキーは見ない
    if "$or" in raw:
        return AnyOf(_parse_list(raw["$or"], "$or", max_depth, depth))
    if "$nor" in raw:
        return Not(AnyOf(_parse_list(raw["$nor"], "$nor", max_depth, depth)))
    if "$and" in raw:
        return AllOf(_parse_list(raw["$and"], "$and", max_depth, depth))
    if "$not" in raw:
        return Not(_parse(raw["$not"], max_depth, depth + 1))

    fields: list[Condition] = []
    for key, value in raw.items():
        if not isinstance(key, str) or not key:
            raise ConditionError(f"invalid attribute path: {key!r}")
        if key.startswith("$"):
            raise ConditionError(f"unknown condition combinator: {key}")
        fields.append(
            FieldTest(tuple(key.split(".")), _parse_value(value, max_depth, depth + 1))
        )
    return AllOf(tuple(fields))


def _parse_list(
    raw: Any, combinator: str, max_depth: int, depth: int
) -> tuple[Condition, ...]:
    if not isinstance(raw, list):
        raise ConditionError(f"{combinator} expects a list")
    return tuple(_parse(item, max_depth, depth + 1) for item in raw)


def _is_operator_object(value: Any) -> bool:
    return isinstance(value, Mapping) and all(
        isinstance(key, str) and key.startswith("$") for key in value
    )


def _parse_value(raw: Any, max_depth: int, depth: int) -> ValueTest:
    _check_depth(max_depth, depth)
    if _is_operator_object(raw):
        return OperatorSet(
            tuple(
                _parse_operator(name, argument, max_depth, depth + 1)
                for name, argument in raw.items()
            )
        )
    return Literal(raw)


def _parse_operator(name: str, argument: Any, max_depth: int, depth: int) -> Operator:
    _check_depth(max_depth, depth)
    if name in _EQUALITY_OPERATORS or name in _COMPARISON_OPERATORS:
        return Operator(name, argument)
    if name in ("$in", "$nin"):
        # リスト以外の引数は評価時に不一致となる
        return Operator(name, tuple(argument) if isinstance(argument, list) else None)
    if name == "$regex":
        if not isinstance(argument, str):
            raise ConditionError("$regex expects a string pattern")
        try:
            return Operator(name, re.compile(argument))
        except re.error:
            logger.debug("invalid_regex", pattern=argument)
            return Operator(name, None)
    if name == "$exists":
        return Operator(name, bool(argument))
    if name == "$type":
        return Operator(name, argument)
    if name in ("$not", "$size"):
        return Operator(name, _parse_value(argument, max_depth, depth + 1))
    if name == "$all":
        if not isinstance(argument, list):
            return Operator(name, None)
        return Operator(
            name, tuple(_parse_value(item, max_depth, depth + 1) for item in argument)
        )
    if name == "$elemMatch":
        if _is_operator_object(argument):
            return Operator(name, _parse_value(argument, max_depth, depth + 1))
        return Operator(name, _parse(argument, max_depth, depth + 1))
    if name in _VERSION_OPERATORS:
        return Operator(name, _version_operand(argument))
    raise ConditionError(f"unknown operator: {name}")


def matches(condition: Condition, attributes: Any) -> bool:
    """解析済み条件式を属性に対して評価する。例外は送出しない。"""
    if isinstance(condition, AllOf):
        return all(matches(child, attributes) for child in condition.children)
    if isinstance(condition, AnyOf):
        if not condition.children:
            return True
        return any(matches(child, attributes) for child in condition.children)
    if isinstance(condition, Not):
        return not matches(condition.child, attributes)
    found, value = _lookup(attributes, condition.path)
    return _test_value(condition.test, found, value)


def eval_condition(
    raw: Any, attributes: Any, max_depth: int = MAX_CONDITION_DEPTH
) -> bool:
    """条件式文書を解析して評価する。不正な文書は不一致。"""
    try:
        condition = parse_condition(raw, max_depth)
    except ConditionError as e:
        logger.warning("invalid_condition", error=str(e))
        return False
    return matches(condition, attributes)


def _lookup(attributes: Any, path: tuple[str, ...]) -> tuple[bool, Any]:
    current = attributes
    for segment in path:
        if not isinstance(current, Mapping) or segment not in current:
            return False, None
        current = current[segment]
    return True, current


def _test_value(test: ValueTest, found: bool, value: Any) -> bool:
    if isinstance(test, Literal):
        return found and values_equal(value, test.value)
    return all(_eval_operator(op, found, value) for op in test.operators)


def _eval_operator(op: Operator, found: bool, value: Any) -> bool:
    if op.name == "$exists":
        return found == op.argument
    if not found:
        return False

    name = op.name
    if name == "$eq":
        return values_equal(value, op.argument)
    if name == "$ne":
        return not values_equal(value, op.argument)
    if name in _COMPARISON_OPERATORS:
        return _compare(name, value, op.argument)
    if name in ("$in", "$nin"):
        if op.argument is None:
            return False
        contained = _is_in(op.argument, value)
        return contained if name == "$in" else not contained
    if name == "$regex":
        text = _coerce_text(value)
        if op.argument is None or text is None:
            return False
        if len(text) > MAX_REGEX_INPUT_LENGTH:
            logger.debug("regex_input_too_long", length=len(text))
            return False
        return op.argument.search(text) is not None
    if name == "$type":
        return type_name(value) == op.argument
    if name == "$not":
        return not _test_value(op.argument, True, value)
    if name == "$size":
        if not isinstance(value, list):
            return False
        return _test_value(op.argument, True, len(value))
    if name == "$all":
        if op.argument is None or not isinstance(value, list):
            return False
        return all(
            any(_test_value(test, True, item) for item in value) for test in op.argument
        )
    if name == "$elemMatch":
        if not isinstance(value, list):
            return False
        if isinstance(op.argument, (Literal, OperatorSet)):
            return any(_test_value(op.argument, True, item) for item in value)
        return any(matches(op.argument, item) for item in value)
    if name in _VERSION_OPERATORS:
        return _compare_versions(name, value, op.argument)
    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def values_equal(left: Any, right: Any) -> bool:
    """型を区別する等価比較。int と float は数値として比較する。"""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(
            values_equal(a, b) for a, b in zip(left, right)
        )
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        return left.keys() == right.keys() and all(
            values_equal(left[key], right[key]) for key in left
        )
    return type(left) is type(right) and left == right


def _compare(name: str, left: Any, right: Any) -> bool:
    if not (
        (_is_number(left) and _is_number(right))
        or (isinstance(left, str) and isinstance(right, str))
    ):
        return False
    if name == "$lt":
        return left < right
    if name == "$lte":
        return left <= right
    if name == "$gt":
        return left > right
    return left >= right


def _is_in(candidates: tuple[Any, ...], value: Any) -> bool:
    if isinstance(value, list):
        return any(values_equal(item, c) for item in value for c in candidates)
    return any(values_equal(value, c) for c in candidates)


def _coerce_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if _is_number(value):
        return str(value)
    return None


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return "unknown"


def padded_version_string(version: str) -> str:
    """辞書順比較できるようにバージョン文字列を正規化する。

    "v1.2.3-rc.1+build" -> "    1-    2-    3-rc-    1"
    プレリリースなしの 3 要素には "~" を付加し、プレリリース版より大きくする。
    """
    stripped = re.sub(r"(^v|\+.*$)", "", version)
    parts = [part for part in re.split(r"[-.]", stripped) if part]
    if len(parts) == 3:
        parts.append("~")
    return "-".join(
        part.rjust(5, " ") if re.fullmatch(r"[0-9]+", part) else part for part in parts
    )


def _version_operand(value: Any) -> str | None:
    if isinstance(value, str):
        return padded_version_string(value)
    if _is_number(value):
        return padded_version_string(str(value))
    return None


def _compare_versions(name: str, value: Any, expected: str | None) -> bool:
    actual = _version_operand(value)
    if actual is None or expected is None:
        return False
    if name == "$veq":
        return actual == expected
    if name == "$vne":
        return actual != expected
    if name == "$vgt":
        return actual > expected
    if name == "$vgte":
        return actual >= expected
    if name == "$vlt":
        return actual < expected
    return actual <= expected
