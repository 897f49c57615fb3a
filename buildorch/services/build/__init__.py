"""构建服务模块

拆分说明:
- adapters.py: 按构建类型的命令适配器
- cache.py: 按构建类型的共享依赖缓存
- executor.py: 单服务 setup → compile → test → verify 执行
"""

from buildorch.services.build.adapters import (
    ADAPTERS,
    BuildAdapter,
    GoAdapter,
    MavenAdapter,
    NodeAdapter,
    create_adapters,
)
from buildorch.services.build.cache import CacheCoordinator, CacheKey
from buildorch.services.build.executor import BuildStepRunner

__all__ = [
    "ADAPTERS",
    "BuildAdapter",
    "BuildStepRunner",
    "CacheCoordinator",
    "CacheKey",
    "GoAdapter",
    "MavenAdapter",
    "NodeAdapter",
    "create_adapters",
]
