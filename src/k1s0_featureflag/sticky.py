"""スティッキーバケットストア

一度割り当てたバリエーションを (実験キー, ハッシュ値) 単位で保持し、
重みの変更後も同じユーザーに同じバリエーションを返すために使う。
永続化の方法はホスト側が決める。エンジンは get / set のみを呼び出す。
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod


class StickyBucketStore(ABC):
    """スティッキーバケットストア抽象基底クラス。"""

    @abstractmethod
    def get(self, experiment_key: str, hash_value: str) -> int | None:
        """保存済みのバリエーション番号を返す。存在しなければ None。"""
        ...

    @abstractmethod
    def set(self, experiment_key: str, hash_value: str, variation_index: int) -> None:
        """バリエーション番号を保存する。"""
        ...


class InMemoryStickyBucketStore(StickyBucketStore):
    """プロセス内メモリに保持するストア。キー単位の操作はスレッドセーフ。"""

    def __init__(self) -> None:
        self._assignments: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def get(self, experiment_key: str, hash_value: str) -> int | None:
        with self._lock:
            return self._assignments.get((experiment_key, hash_value))

    def set(self, experiment_key: str, hash_value: str, variation_index: int) -> None:
        with self._lock:
            self._assignments[(experiment_key, hash_value)] = variation_index

    def __len__(self) -> int:
        with self._lock:
            return len(self._assignments)
