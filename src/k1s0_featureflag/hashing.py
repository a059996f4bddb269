"""決定論的ハッシュとバケット計算

GrowthBook の参照実装と同一の値を返すこと。浮動小数点演算は最後の除算のみ。
"""

from __future__ import annotations

from typing import Sequence
from urllib.parse import parse_qs, urlparse

from .models import BucketRange, Namespace

_FNV32_OFFSET_BASIS = 0x811C9DC5
_FNV32_PRIME = 0x01000193
_UINT32_MASK = 0xFFFFFFFF

# 重みの合計に許容する誤差（1/3 を 3 つ並べた場合など）
WEIGHT_SUM_TOLERANCE = 0.01


def fnv1a32(text: str) -> int:
    """UTF-8 バイト列に対する 32bit FNV-1a ハッシュ。"""
    hval = _FNV32_OFFSET_BASIS
    for byte in text.encode("utf-8"):
        hval ^= byte
        hval = (hval * _FNV32_PRIME) & _UINT32_MASK
    return hval


def hash_value(seed: str, value: str, version: int) -> float | None:
    """seed と value から [0, 1) の値を求める。

    version 1: fnv1a32(value + seed) の下位 1000 分割（旧方式）
    version 2: fnv1a32(str(fnv1a32(seed + value))) の下位 10000 分割
    未知のバージョンでは None を返す。
    """
    if version == 2:
        n = fnv1a32(str(fnv1a32(seed + value)))
        return (n % 10000) / 10000
    if version == 1:
        n = fnv1a32(value + seed)
        return (n % 1000) / 1000
    return None


def in_range(n: float, bucket_range: BucketRange) -> bool:
    """半開区間 [start, end) に含まれるか判定する。"""
    return bucket_range.start <= n < bucket_range.end


def in_namespace(hash_attribute_value: str, namespace: Namespace) -> bool:
    """名前空間の割当範囲に含まれるか判定する。"""
    n = hash_value("__" + namespace.id, hash_attribute_value, 1)
    if n is None:
        return False
    return namespace.range_start <= n < namespace.range_end


def get_equal_weights(num_variations: int) -> list[float]:
    if num_variations < 1:
        return []
    return [1 / num_variations] * num_variations


def _weights_are_usable(weights: Sequence[float], num_variations: int) -> bool:
    if len(weights) != num_variations:
        return False
    if any(w < 0 for w in weights):
        return False
    return sum(weights) <= 1 + WEIGHT_SUM_TOLERANCE


def get_bucket_ranges(
    num_variations: int,
    coverage: float = 1.0,
    weights: Sequence[float] | None = None,
) -> list[BucketRange]:
    """バリエーションごとのバケット範囲を返す。

    weights の合計が 1 未満の場合、残りはどのバリエーションにも割り当てない。
    長さ不一致・負値・合計超過の weights は均等配分に置き換える。
    """
    coverage = min(max(coverage, 0.0), 1.0)
    if weights is None or not _weights_are_usable(weights, num_variations):
        weights = get_equal_weights(num_variations)

    ranges: list[BucketRange] = []
    cumulative = 0.0
    for weight in weights:
        start = cumulative
        cumulative += weight
        ranges.append(BucketRange(start, start + coverage * weight))
    return ranges


def choose_variation(n: float, ranges: Sequence[BucketRange]) -> int:
    """n を含む最初の範囲のインデックス。該当なしは -1。"""
    if n >= 1.0:
        return -1
    for index, bucket_range in enumerate(ranges):
        if in_range(n, bucket_range):
            return index
    return -1


def get_query_string_override(
    experiment_key: str, url: str, num_variations: int
) -> int | None:
    """URL クエリ文字列 ?<experiment_key>=<index> による強制バリエーション。"""
    if not url:
        return None
    query = urlparse(url).query
    if not query:
        return None
    values = parse_qs(query).get(experiment_key)
    if not values:
        return None
    variation = values[0]
    if not variation.isdecimal():
        return None
    index = int(variation)
    if index >= num_variations:
        return None
    return index
