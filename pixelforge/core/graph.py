# pixelforge/core/graph.py

import logging
from typing import Dict, List, Optional, Sequence

from pixelforge.core.contracts import PluginDescriptor
from pixelforge.core.errors import CircularDependencyError

logger = logging.getLogger(__name__)


class DependencyGraph:
    """
    按声明的依赖名对插件做拓扑排序。

    - 依赖一定排在依赖它的插件之前。
    - 不存在于集合中的依赖名被视为已满足，直接忽略（可选插件被过滤掉时不会破坏图）。
    - 没有顺序约束的插件保持发现顺序。
    """
    def __init__(self, descriptors: Sequence[PluginDescriptor]):
        self._descriptors: List[PluginDescriptor] = list(descriptors)
        self._by_name: Dict[str, PluginDescriptor] = {}
        for d in self._descriptors:
            if d.name in self._by_name:
                logger.warning(f"Duplicate plugin name '{d.name}', keeping the first one discovered.")
                continue
            self._by_name[d.name] = d

    def sort(self) -> List[PluginDescriptor]:
        """深度优先后序遍历。遇到仍在栈上的节点即判定为环，立即失败。"""
        return self._walk(strict=True)

    def _walk(self, strict: bool) -> List[PluginDescriptor]:
        ordered: List[PluginDescriptor] = []
        visited = set()
        stack: List[str] = []
        on_stack = set()

        def visit(d: PluginDescriptor):
            if d.name in visited:
                return
            if d.name in on_stack:
                if strict:
                    cycle = stack[stack.index(d.name):] + [d.name]
                    raise CircularDependencyError(d.name, cycle)
                # 宽松模式：忽略这条回边，环上其余的边照常参与排序
                return

            stack.append(d.name)
            on_stack.add(d.name)
            for dep_name in d.dependencies:
                dep = self._by_name.get(dep_name)
                if dep is not None:
                    visit(dep)
            stack.pop()
            on_stack.discard(d.name)

            visited.add(d.name)
            ordered.append(d)

        for d in self._by_name.values():
            visit(d)
        return ordered

    def sort_or_fallback(self, build_logger: Optional[object] = None) -> List[PluginDescriptor]:
        """
        出现环时记录警告并继续，而不是阻塞整次运行。
        环外的依赖顺序保持不变；环上的插件按发现顺序断开回边，在日志中被点名。
        """
        try:
            return self.sort()
        except CircularDependencyError as e:
            message = (
                f"{e}. Continuing anyway; plugins in the cycle "
                f"({', '.join(sorted(set(e.cycle)))}) may run before their dependencies."
            )
            if build_logger is not None:
                build_logger.warn(message)
            else:
                logger.warning(message)
            return self._walk(strict=False)
