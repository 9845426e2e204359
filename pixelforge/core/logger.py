# pixelforge/core/logger.py

import logging
from typing import List, Optional


class _ErrorCounter:
    def __init__(self):
        self.count = 0


class BuildLogger:
    """
    带作用域的构建日志。所有由 scoped() 派生出的实例共享同一个错误计数器，
    编排器据此判断整次运行是否成功。error() 从不抛出异常。
    """
    def __init__(
        self,
        name: str = "pixelforge.build",
        scopes: Optional[List[str]] = None,
        counter: Optional[_ErrorCounter] = None,
    ):
        self._logger = logging.getLogger(name)
        self._scopes: List[str] = list(scopes or [])
        self._counter = counter or _ErrorCounter()

    @property
    def error_count(self) -> int:
        return self._counter.count

    @property
    def scope(self) -> Optional[str]:
        return self._scopes[-1] if self._scopes else None

    def scoped(self, scope: str) -> "BuildLogger":
        return BuildLogger(self._logger.name, self._scopes + [scope], self._counter)

    def _format(self, message: str) -> str:
        return f"[{self.scope}] {message}" if self.scope else message

    def log(self, message: str = "") -> None:
        self._logger.info(self._format(message))

    def debug(self, message: str) -> None:
        self._logger.debug(self._format(message))

    def warn(self, message: str) -> None:
        self._logger.warning(self._format(message))

    def error(self, message: str) -> None:
        self._counter.count += 1
        self._logger.error(self._format(message))

    def exception(self, message: str, exc: BaseException) -> None:
        self._counter.count += 1
        self._logger.error(self._format(message), exc_info=exc)
