"""集中配置管理

从 YAML 文件加载 + 编程式覆盖。配置作为显式值传给编排器、
调度器和执行器，不设进程级全局单例。
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from buildorch.core.exceptions import ValidationError
from buildorch.core.models import Stage
from buildorch.core.reporter import available_formats
from buildorch.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

CACHE_DIR_ENV = "BUILDORCH_CACHE_DIR"

_STAGES = tuple(s.value for s in Stage)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _default_cache_dir() -> str:
    # 缓存放在工作区之外，跨运行复用
    return str(Path.home() / ".cache" / "buildorch")


@dataclass
class Config:
    """编排器配置"""

    # 输入 / 输出
    services_file: str = "configs/services.yml"
    root_dir: str = ""                 # workdir 的相对基准，空则取服务清单所在目录
    report_dir: str = "results"
    log_dir: str = ""                  # 非空时写入每个阶段的完整日志
    cache_dir: str = field(default_factory=_default_cache_dir)
    report_formats: list[str] = field(default_factory=lambda: ["json", "text"])

    # 调度
    max_workers: int = 4
    fail_fast: bool = False

    # 阶段执行
    default_timeout: int = 1800
    stage_timeouts: dict[str, int] = field(default_factory=dict)
    max_retries: int = 2
    retry_backoff: float = 2.0
    retry_max_delay: float = 30.0
    output_tail_lines: int = 40

    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        errors: list[str] = []
        for name in ("max_workers", "max_retries", "default_timeout", "output_tail_lines"):
            value = getattr(self, name)
            if not _is_int(value):
                errors.append(f"{name} 必须是整数 (当前 {value!r})")
        for name in ("retry_backoff", "retry_max_delay"):
            value = getattr(self, name)
            if not _is_number(value) or value < 0:
                errors.append(f"{name} 必须是非负数 (当前 {value!r})")
        if _is_int(self.max_workers) and self.max_workers < 1:
            errors.append(f"max_workers 必须 >= 1 (当前 {self.max_workers})")
        if _is_int(self.max_retries) and self.max_retries < 0:
            errors.append(f"max_retries 不能为负 (当前 {self.max_retries})")
        if _is_int(self.default_timeout) and self.default_timeout <= 0:
            errors.append(f"default_timeout 必须为正数 (当前 {self.default_timeout})")

        if not isinstance(self.stage_timeouts, dict):
            errors.append("stage_timeouts 必须是映射")
        else:
            for stage, seconds in self.stage_timeouts.items():
                if stage not in _STAGES:
                    errors.append(f"stage_timeouts.{stage}: 未知阶段（可选: {', '.join(_STAGES)}）")
                if not _is_number(seconds) or seconds <= 0:
                    errors.append(f"stage_timeouts.{stage} 必须为正数 (当前 {seconds!r})")

        if not isinstance(self.report_formats, list):
            errors.append("report_formats 必须是列表")
        else:
            known = available_formats()
            for fmt in self.report_formats:
                if fmt not in known:
                    errors.append(f"report_formats: 不支持的格式 {fmt!r}（可用: {known}）")
        if errors:
            raise ValidationError("配置无效", details=errors)

    @classmethod
    def from_file(cls, path: str = "configs/buildorch.yml") -> Config:
        """从 YAML 文件加载配置，不存在则返回默认；环境变量覆盖缓存目录"""
        try:
            data = load_yaml(path)
        except (yaml.YAMLError, ValueError) as e:
            raise ValidationError(f"无法读取配置文件 {path}: {e}") from e
        known = {f.name for f in fields(cls)} - {"extra"}
        matched = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        cfg = cls(**matched)
        cfg.extra = extra
        if data:
            logger.info("配置已加载: %s", path)
        env_cache = os.getenv(CACHE_DIR_ENV, "")
        if env_cache:
            cfg.cache_dir = env_cache
        return cfg

    def with_overrides(self, **overrides: Any) -> Config:
        """返回应用了非 None 覆盖值的新配置（CLI 参数优先）"""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self
