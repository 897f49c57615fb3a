"""构建依赖缓存协调

职责:
- 按构建类型提供稳定的命名空间缓存目录
- 同类型的所有服务共享同一目录，跨运行复用（位于工作区之外）

缓存策略:
  - 以 (build_kind, namespace) 为缓存键，路径为 root/<kind>/<namespace>
  - maven / go / node 目录互不重叠
  - 目录内的并发写安全由各工具自身的锁保证，这里不做干预
  - 不做淘汰，单调增长，由外部清理
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from buildorch.core.models import BuildKind

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "deps"


@dataclass(frozen=True)
class CacheKey:
    """缓存键"""

    kind: BuildKind
    namespace: str = DEFAULT_NAMESPACE

    def relpath(self) -> Path:
        return Path(self.kind.value) / self.namespace


@dataclass(frozen=True)
class CacheEntry:
    """已存在缓存目录的快照"""

    key: CacheKey
    path: Path
    size_bytes: int


class CacheCoordinator:
    """按构建类型管理共享缓存目录"""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()
        self._lock = threading.Lock()
        self._acquired: dict[CacheKey, Path] = {}

    def path_for(self, kind: BuildKind, namespace: str = DEFAULT_NAMESPACE) -> Path:
        """计算缓存路径，不创建目录"""
        key = self._key(kind, namespace)
        return self.root / key.relpath()

    def acquire(self, kind: BuildKind, namespace: str = DEFAULT_NAMESPACE) -> Path:
        """返回（不存在则创建）该类型的缓存目录，可并发调用"""
        key = self._key(kind, namespace)
        with self._lock:
            cached = self._acquired.get(key)
            if cached is not None:
                return cached
            path = self.root / key.relpath()
            path.mkdir(parents=True, exist_ok=True)
            self._acquired[key] = path
        logger.info("缓存目录就绪: %s/%s -> %s", kind.value, namespace, path)
        return path

    def entries(self) -> list[CacheEntry]:
        """列出磁盘上已存在的缓存目录"""
        result: list[CacheEntry] = []
        for kind in BuildKind:
            kind_dir = self.root / kind.value
            if not kind_dir.is_dir():
                continue
            for ns_dir in sorted(p for p in kind_dir.iterdir() if p.is_dir()):
                result.append(CacheEntry(
                    key=CacheKey(kind=kind, namespace=ns_dir.name),
                    path=ns_dir,
                    size_bytes=_dir_size(ns_dir),
                ))
        return result

    @staticmethod
    def _key(kind: BuildKind, namespace: str) -> CacheKey:
        if not namespace or "/" in namespace or "\\" in namespace or namespace in (".", ".."):
            raise ValueError(f"缓存命名空间无效: {namespace!r}")
        return CacheKey(kind=BuildKind(kind), namespace=namespace)


def _dir_size(path: Path) -> int:
    total = 0
    for p in path.rglob("*"):
        try:
            if p.is_file():
                total += p.stat().st_size
        except OSError:
            # 工具可能在统计过程中删除临时文件
            continue
    return total
