"""服务描述注册表

从 YAML 服务清单加载 ServiceDescriptor 列表。清单格式:

    services:
      catalog:
        kind: maven
        workdir: services/catalog
        depends_on: []
        artifact: {pattern: "target/*.jar", count: 1}
      ui:
        kind: node
        workdir: services/ui
        depends_on: [catalog, cart, orders]
        artifact: "dist/index.html"

字段错误集中收集后一次性抛出 ValidationError，依赖关系的正确性
（未知依赖、环）由依赖图构建器负责。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from buildorch.core.exceptions import ValidationError
from buildorch.core.models import ArtifactRule, BuildKind, ServiceDescriptor
from buildorch.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

_KINDS = ", ".join(k.value for k in BuildKind)
_FLAG_DEFAULTS = {"required": True, "run_tests": True, "tests_advisory": False}


class ServiceRegistry:
    """服务清单注册表（只读）"""

    section_key = "services"

    def __init__(self, services_file: str | Path, root_dir: str | Path = "") -> None:
        self.services_file = Path(services_file)
        self.root_dir = Path(root_dir) if root_dir else self.services_file.parent
        try:
            self._data: dict[str, Any] = load_yaml(self.services_file)
        except (yaml.YAMLError, ValueError) as e:
            raise ValidationError(f"无法读取服务清单 {self.services_file}: {e}") from e

    def _section(self) -> dict[str, Any]:
        section = self._data.get(self.section_key) or {}
        if not isinstance(section, dict):
            raise ValidationError(
                f"{self.services_file}: '{self.section_key}' 必须是映射",
            )
        return section

    def names(self) -> list[str]:
        return sorted(self._section())

    def load(self) -> list[ServiceDescriptor]:
        """解析全部服务描述，字段错误汇总后抛出"""
        if not self.services_file.exists():
            raise ValidationError(f"服务清单不存在: {self.services_file}")
        descriptors: list[ServiceDescriptor] = []
        errors: list[str] = []
        for name, entry in self._section().items():
            try:
                descriptors.append(self._parse(str(name), entry))
            except ValidationError as e:
                errors.extend(e.details or [str(e)])
        if errors:
            raise ValidationError(
                f"服务清单校验失败: {self.services_file} ({len(errors)} 处错误)",
                details=errors,
            )
        logger.info("已加载 %d 个服务描述: %s", len(descriptors), self.services_file)
        return descriptors

    def _parse(self, name: str, entry: Any) -> ServiceDescriptor:
        if not isinstance(entry, dict):
            raise ValidationError(f"{name}: 描述必须是映射")
        errors: list[str] = []

        kind_raw = str(entry.get("kind", ""))
        try:
            kind = BuildKind(kind_raw)
        except ValueError:
            errors.append(f"{name}: kind '{kind_raw}' 无效（可选: {_KINDS}）")
            kind = BuildKind.MAVEN

        workdir_raw = entry.get("workdir", "")
        if not workdir_raw:
            errors.append(f"{name}: workdir 为必填")

        deps = entry.get("depends_on") or []
        if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
            errors.append(f"{name}: depends_on 必须是服务名列表")
            deps = []
        if name in deps:
            errors.append(f"{name}: 不能依赖自身")

        env = entry.get("env") or {}
        if not isinstance(env, dict):
            errors.append(f"{name}: env 必须是映射")
            env = {}

        flags = {}
        for key, default in _FLAG_DEFAULTS.items():
            value = entry.get(key, default)
            if not isinstance(value, bool):
                errors.append(f"{name}: {key} 必须是布尔值 (当前 {value!r})")
                value = default
            flags[key] = value

        try:
            artifact = _parse_artifact(entry.get("artifact"))
        except ValidationError as e:
            errors.append(f"{name}: {e}")
            artifact = None

        if errors:
            raise ValidationError(f"服务 '{name}' 描述无效", details=errors)

        workdir = Path(str(workdir_raw))
        if not workdir.is_absolute():
            workdir = self.root_dir / workdir

        return ServiceDescriptor(
            name=name,
            kind=kind,
            workdir=workdir,
            depends_on=tuple(dict.fromkeys(deps)),
            artifact=artifact,
            **flags,
            env=tuple(sorted((str(k), str(v)) for k, v in env.items())),
        )


def _parse_artifact(raw: Any) -> ArtifactRule | None:
    """artifact 支持简写字符串（pattern）或完整映射"""
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        return ArtifactRule(pattern=raw)
    if not isinstance(raw, dict) or not raw.get("pattern"):
        raise ValidationError("artifact 需要 pattern")
    count = raw.get("count", 1)
    if count is not None and (not isinstance(count, int) or count < 1):
        raise ValidationError(f"artifact.count 必须是正整数或 null (当前 {count!r})")
    min_size = raw.get("min_size", 1)
    if not isinstance(min_size, int) or min_size < 0:
        raise ValidationError(f"artifact.min_size 必须是非负整数 (当前 {min_size!r})")
    return ArtifactRule(pattern=str(raw["pattern"]), count=count, min_size=min_size)
