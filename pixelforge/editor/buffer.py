# pixelforge/editor/buffer.py

from collections import deque
from typing import Deque, Iterator, List

from pixelforge.core.contracts import EditorMutation


class RequestBuffer:
    """
    断开期间尚未送达的消息。按入队顺序交付，drain() 取出即清空，
    同一条消息不会在两次连接中被重复交付。
    """
    def __init__(self):
        self._items: Deque[EditorMutation] = deque()

    def push(self, mutation: EditorMutation) -> None:
        self._items.append(mutation)

    def push_front(self, mutations: List[EditorMutation]) -> None:
        """把发送失败的剩余消息放回队首，保持原有顺序。"""
        for mutation in reversed(mutations):
            self._items.appendleft(mutation)

    def drain(self) -> List[EditorMutation]:
        items = list(self._items)
        self._items.clear()
        return items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[EditorMutation]:
        return iter(list(self._items))

    def __bool__(self) -> bool:
        return bool(self._items)
