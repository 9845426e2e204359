# pixelforge/core/watcher.py

import asyncio
import logging
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple, Union

from watchfiles import Change, DefaultFilter, awatch

from pixelforge.config import WATCH_DEBOUNCE_MS, WATCH_STEP_MS
from pixelforge.core.contracts import Subscription, WatchCallback, WatchEvent
from pixelforge.core.errors import WatcherError
from pixelforge.core.tasks import BackgroundTaskManager

logger = logging.getLogger(__name__)

_CHANGE_TYPES = {
    Change.added: "create",
    Change.modified: "update",
    Change.deleted: "delete",
}


def is_ignored(relative: str, patterns: Sequence[str]) -> bool:
    """`client/**` 既匹配目录下的所有内容，也匹配 `client` 目录本身。"""
    for pattern in patterns:
        if fnmatch(relative, pattern):
            return True
        if pattern.endswith("/**") and relative == pattern[:-3]:
            return True
    return False


def to_watch_events(root: Path, changes: Iterable[Tuple[Change, str]], ignore: Sequence[str] = ()) -> List[WatchEvent]:
    events: List[WatchEvent] = []
    for change, raw_path in changes:
        path = Path(raw_path)
        if ignore:
            try:
                relative = path.relative_to(root).as_posix()
            except ValueError:
                relative = path.as_posix()
            if is_ignored(relative, ignore):
                continue
        events.append(WatchEvent(type=_CHANGE_TYPES[change], path=path))
    return events


def coalesce_units(
    root: Union[str, Path],
    events: Iterable[WatchEvent],
    accept: Callable[[Path], bool],
) -> Tuple[Set[str], Set[str]]:
    """
    把一批事件按顶层单元（root 下的第一级目录名）合并。
    返回 (需要重建的单元, 被删除的单元)。同一单元在一批中的多次修改只重建一次。
    `accept` 决定单元内的哪些文件算作源文件，其他文件（例如编辑器保存时的临时文件）被忽略。

    顶层删除之后，同一批里单元内部的事件（`rm -rf` 时逐个文件的删除）不会把单元拉回重建，
    只有顶层的创建或修改可以。最后以磁盘为准：目录已不存在的单元视为被删除。
    """
    root = Path(root)
    changed: Set[str] = set()
    deleted: Set[str] = set()
    for e in events:
        try:
            parts = e.path.relative_to(root).parts
        except ValueError:
            continue
        if not parts:
            continue
        unit = parts[0]
        top_level = len(parts) == 1

        if e.type == "delete" and top_level:
            deleted.add(unit)
            changed.discard(unit)
        elif top_level:
            changed.add(unit)
            deleted.discard(unit)
        elif unit not in deleted and accept(e.path):
            changed.add(unit)

    for unit in list(changed):
        if not (root / unit).exists():
            changed.discard(unit)
            deleted.add(unit)
    return changed, deleted


class _WatchSubscription(Subscription):
    def __init__(
        self,
        watcher: "FileWatcher",
        root: Path,
        callback: WatchCallback,
        ignore: Sequence[str],
    ):
        self.root = root
        self.ignore = list(ignore)
        self._watcher = watcher
        self._callback = callback
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._default_filter = DefaultFilter()

    def start(self):
        self._task = asyncio.create_task(self._run())

    async def _run(self):
        try:
            async for changes in awatch(
                self.root,
                watch_filter=self._default_filter,
                debounce=self._watcher.debounce_ms,
                step=self._watcher.step_ms,
                stop_event=self._stop_event,
                force_polling=self._watcher.force_polling,
            ):
                events = to_watch_events(self.root, sorted(changes, key=lambda c: c[1]), self.ignore)
                if events:
                    self._watcher.dispatch(self, events)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(str(WatcherError(self.root, e)), exc_info=e)

    async def deliver(self, events: List[WatchEvent]):
        try:
            await self._callback(events)
        except Exception as e:
            # 回调失败不终止监听循环
            logger.error(str(WatcherError(self.root, e)), exc_info=e)

    async def close(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=2.0)
            except asyncio.TimeoutError:
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._watcher._forget(self)


class FileWatcher:
    """
    subscribe(path, callback, ignore=[globs]) -> Subscription。
    每个底层通知周期交付一批 WatchEvent；所有订阅的回调经由同一个串行队列执行。
    """
    def __init__(
        self,
        debounce_ms: int = WATCH_DEBOUNCE_MS,
        step_ms: int = WATCH_STEP_MS,
        force_polling: Optional[bool] = None,
    ):
        self.debounce_ms = debounce_ms
        self.step_ms = step_ms
        self.force_polling = force_polling
        self._dispatcher = BackgroundTaskManager(max_workers=1, name="watch")
        self._subscriptions: List[_WatchSubscription] = []

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    async def subscribe(
        self,
        path: Union[str, Path],
        callback: WatchCallback,
        ignore: Optional[Sequence[str]] = None,
    ) -> Subscription:
        if not self._dispatcher.is_running:
            self._dispatcher.start()

        root = Path(path).resolve()
        subscription = _WatchSubscription(self, root, callback, ignore or [])
        self._subscriptions.append(subscription)
        subscription.start()
        logger.debug(f"Watching {root} (ignore={subscription.ignore})")
        return subscription

    def dispatch(self, subscription: _WatchSubscription, events: List[WatchEvent]):
        self._dispatcher.submit_task(subscription.deliver, events)

    async def idle(self):
        """等待已排队的回调全部执行完。"""
        if self._dispatcher.is_running:
            await self._dispatcher.join()

    def _forget(self, subscription: _WatchSubscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def close(self):
        for subscription in list(self._subscriptions):
            await subscription.close()
        await self._dispatcher.stop(drain=False)
