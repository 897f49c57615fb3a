"""构建类型适配器 - Strategy 模式

每种构建类型（maven / go / node）实现相同的 setup / compile / test 能力，
由服务描述的 kind 选择。集合是封闭的，不提供插件注册。

适配器只负责“跑哪条命令、用什么环境变量指向缓存、哪些输出算网络抖动”，
阶段顺序、重试、超时、产物校验都在 BuildStepRunner 中处理。
"""

from __future__ import annotations

import logging
from abc import ABC
from pathlib import Path
from typing import Mapping

from buildorch.core.models import BuildKind, Stage
from buildorch.utils.shell import CommandExecutor, CommandResult, LocalExecutor

logger = logging.getLogger(__name__)


class BuildAdapter(ABC):
    """构建适配器基类

    子类声明各阶段命令、工具名和可重试的网络错误特征即可。
    """

    kind: BuildKind
    tool: str = ""
    tool_hint: str = ""
    setup_cmd: list[str] = []
    compile_cmd: list[str] = []
    test_cmd: list[str] = []
    transient_markers: tuple[str, ...] = ()

    def __init__(self, executor: CommandExecutor | None = None) -> None:
        self.executor = executor or LocalExecutor()

    def command_for(self, stage: Stage) -> list[str]:
        commands = {
            Stage.SETUP: self.setup_cmd,
            Stage.COMPILE: self.compile_cmd,
            Stage.TEST: self.test_cmd,
        }
        if stage not in commands:
            raise ValueError(f"{self.kind.value} 适配器不执行阶段 {stage.value}")
        return list(commands[stage])

    def _run(
        self, stage: Stage, workdir: Path,
        env: Mapping[str, str] | None, timeout: float | None,
    ) -> CommandResult:
        cmd = self.command_for(stage)
        logger.info("  %s: %s (cwd=%s)", stage.value, " ".join(cmd), workdir)
        return self.executor.execute(
            cmd, cwd=str(workdir),
            env=dict(env) if env is not None else None,
            timeout=timeout,
        )

    def setup(
        self, workdir: Path, env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """拉取依赖（使用缓存目录）"""
        return self._run(Stage.SETUP, workdir, env, timeout)

    def compile(
        self, workdir: Path, env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        return self._run(Stage.COMPILE, workdir, env, timeout)

    def test(
        self, workdir: Path, env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        return self._run(Stage.TEST, workdir, env, timeout)

    def cache_env(self, cache_dir: Path, base_env: Mapping[str, str]) -> dict[str, str]:
        """把共享缓存目录告诉工具的环境变量"""
        return {}

    def is_transient(self, result: CommandResult) -> bool:
        """失败输出是否命中网络类错误特征"""
        if result.success:
            return False
        output = result.output
        return any(marker in output for marker in self.transient_markers)


class MavenAdapter(BuildAdapter):
    kind = BuildKind.MAVEN
    tool = "mvn"
    tool_hint = "安装 Maven 并确认 mvn 在 PATH 中"
    setup_cmd = ["mvn", "-B", "-q", "dependency:go-offline"]
    compile_cmd = ["mvn", "-B", "-DskipTests", "package"]
    test_cmd = ["mvn", "-B", "test"]
    transient_markers = (
        "Could not transfer artifact",
        "Could not resolve dependencies",
        "Connection reset",
        "Connection timed out",
        "UnknownHostException",
        "Temporary failure in name resolution",
    )

    def cache_env(self, cache_dir: Path, base_env: Mapping[str, str]) -> dict[str, str]:
        opts = base_env.get("MAVEN_OPTS", "")
        repo_opt = f"-Dmaven.repo.local={cache_dir}"
        return {"MAVEN_OPTS": f"{opts} {repo_opt}".strip()}


class GoAdapter(BuildAdapter):
    kind = BuildKind.GO
    tool = "go"
    tool_hint = "安装 Go 工具链并确认 go 在 PATH 中"
    setup_cmd = ["go", "mod", "download"]
    compile_cmd = ["go", "build", "-o", "bin/", "./..."]
    test_cmd = ["go", "test", "./..."]
    transient_markers = (
        "dial tcp",
        "i/o timeout",
        "TLS handshake timeout",
        "connection reset by peer",
        "unexpected EOF",
    )

    def cache_env(self, cache_dir: Path, base_env: Mapping[str, str]) -> dict[str, str]:
        return {
            "GOMODCACHE": str(cache_dir / "mod"),
            "GOCACHE": str(cache_dir / "build"),
        }


class NodeAdapter(BuildAdapter):
    kind = BuildKind.NODE
    tool = "npm"
    tool_hint = "安装 Node.js（自带 npm）并确认 npm 在 PATH 中"
    setup_cmd = ["npm", "ci", "--no-audit", "--no-fund"]
    compile_cmd = ["npm", "run", "build"]
    test_cmd = ["npm", "test"]
    transient_markers = (
        "ETIMEDOUT",
        "ECONNRESET",
        "EAI_AGAIN",
        "ENOTFOUND",
        "socket hang up",
    )

    def cache_env(self, cache_dir: Path, base_env: Mapping[str, str]) -> dict[str, str]:
        # CI=true 让测试运行器以非 watch 模式退出
        return {"npm_config_cache": str(cache_dir), "CI": "true"}


ADAPTERS: dict[BuildKind, type[BuildAdapter]] = {
    BuildKind.MAVEN: MavenAdapter,
    BuildKind.GO: GoAdapter,
    BuildKind.NODE: NodeAdapter,
}


def create_adapters(executor: CommandExecutor | None = None) -> dict[BuildKind, BuildAdapter]:
    """为每种构建类型创建共享同一执行器的适配器"""
    shared = executor or LocalExecutor()
    return {kind: cls(shared) for kind, cls in ADAPTERS.items()}
