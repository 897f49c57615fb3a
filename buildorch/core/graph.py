"""依赖图构建器

由服务描述构建有向无环图并计算拓扑分层:
  - 每条依赖必须指向已注册服务，否则 UnknownDependencyError
  - Kahn 分层：反复取出依赖全部位于前序层的节点
  - 无法全部放置即存在环，再用 DFS 找出具体环路，CycleDetectedError 报出环上节点

分层只说明每一时刻的最大可用并行度，调度器按单个节点的依赖就绪启动，
不等待整层完成。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator

from buildorch.core.exceptions import (
    CycleDetectedError,
    UnknownDependencyError,
    ValidationError,
)
from buildorch.core.models import ServiceDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildGraph:
    """服务依赖图（构建后不可变）"""

    descriptors: dict[str, ServiceDescriptor]
    dependents: dict[str, tuple[str, ...]]  # dep -> 直接下游
    layers: tuple[tuple[str, ...], ...]

    def __len__(self) -> int:
        return len(self.descriptors)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.descriptors))

    def __contains__(self, name: object) -> bool:
        return name in self.descriptors

    def get(self, name: str) -> ServiceDescriptor:
        return self.descriptors[name]

    def dependencies_of(self, name: str) -> tuple[str, ...]:
        return self.descriptors[name].depends_on

    def dependents_of(self, name: str) -> tuple[str, ...]:
        return self.dependents.get(name, ())

    def descendants_of(self, name: str) -> list[str]:
        """传递下游（不含自身），按名称排序"""
        seen: set[str] = set()
        stack = list(self.dependents_of(name))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self.dependents_of(node))
        return sorted(seen)

    def layer_of(self, name: str) -> int:
        for idx, layer in enumerate(self.layers):
            if name in layer:
                return idx
        raise KeyError(name)

    def roots(self) -> list[str]:
        """无依赖的节点"""
        return sorted(n for n, d in self.descriptors.items() if not d.depends_on)

    def select(self, names: Iterable[str]) -> BuildGraph:
        """取指定服务及其全部传递依赖组成的子图"""
        wanted: set[str] = set()
        stack = list(names)
        while stack:
            name = stack.pop()
            if name not in self.descriptors:
                raise UnknownDependencyError("", name)
            if name in wanted:
                continue
            wanted.add(name)
            stack.extend(self.descriptors[name].depends_on)
        return build_graph([self.descriptors[n] for n in sorted(wanted)])


def build_graph(descriptors: Iterable[ServiceDescriptor]) -> BuildGraph:
    """校验服务描述并构建依赖图"""
    items = list(descriptors)
    by_name: dict[str, ServiceDescriptor] = {}
    dupes: list[str] = []
    for d in items:
        if d.name in by_name:
            dupes.append(d.name)
        by_name[d.name] = d
    if dupes:
        raise ValidationError(f"服务名重复: {sorted(set(dupes))}")

    dependents: dict[str, list[str]] = {name: [] for name in by_name}
    for d in items:
        for dep in d.depends_on:
            if dep not in by_name:
                raise UnknownDependencyError(d.name, dep)
            dependents[dep].append(d.name)

    layers = _topo_layers(by_name)
    logger.debug("依赖图分层: %s", [list(layer) for layer in layers])
    return BuildGraph(
        descriptors=by_name,
        dependents={k: tuple(sorted(v)) for k, v in dependents.items()},
        layers=layers,
    )


def _topo_layers(by_name: dict[str, ServiceDescriptor]) -> tuple[tuple[str, ...], ...]:
    placed: set[str] = set()
    remaining = set(by_name)
    layers: list[tuple[str, ...]] = []

    while remaining:
        layer = sorted(
            n for n in remaining
            if all(dep in placed for dep in by_name[n].depends_on)
        )
        if not layer:
            raise CycleDetectedError(_find_cycle(by_name, remaining))
        layers.append(tuple(layer))
        placed.update(layer)
        remaining.difference_update(layer)

    return tuple(layers)


def _find_cycle(by_name: dict[str, ServiceDescriptor], remaining: set[str]) -> list[str]:
    """在无法分层的剩余节点中找出一条具体环路，首尾节点相同"""
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        visiting.append(node)
        on_path.add(node)
        for dep in by_name[node].depends_on:
            if dep not in remaining or dep in done:
                continue
            if dep in on_path:
                return visiting[visiting.index(dep):] + [dep]
            found = visit(dep)
            if found:
                return found
        on_path.discard(node)
        visiting.pop()
        done.add(node)
        return None

    for start in sorted(remaining):
        if start in done:
            continue
        cycle = visit(start)
        if cycle:
            return cycle
    # 剩余节点必然含环；兜底返回全部剩余节点
    return sorted(remaining)
