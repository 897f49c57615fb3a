"""测试共享 fixture - 假执行器 / 假适配器 / 可编排的单服务执行器

真实工具链（mvn / go / npm）不参与测试:
  - FakeExecutor 按 (服务目录名, 阶段) 返回预设的 CommandResult 或抛出异常
  - FakeAdapter 的命令形如 ["fake", "<stage>"]，便于 FakeExecutor 识别阶段
  - ScriptedRunner 直接返回预设结果，供调度器测试统计并发和启动顺序
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest

from buildorch.core.models import (
    ArtifactRule,
    BuildKind,
    BuildStepResult,
    ErrorDetail,
    ErrorKind,
    Outcome,
    ServiceDescriptor,
    Stage,
)
from buildorch.services.build.adapters import BuildAdapter
from buildorch.services.build.cache import CacheCoordinator
from buildorch.services.build.executor import BuildStepRunner
from buildorch.utils.shell import CommandResult


@dataclass
class Call:
    service: str
    stage: str
    cmd: list[str]
    env: dict[str, str] | None
    timeout: float | None


class FakeExecutor:
    """按 (服务, 阶段) 返回预设响应；列表响应按调用次序依次取出，最后一项重复使用"""

    def __init__(self, responses: dict[tuple[str, str], Any] | None = None) -> None:
        self.responses: dict[tuple[str, str], Any] = dict(responses or {})
        self.calls: list[Call] = []
        self._lock = threading.Lock()

    def execute(
        self, cmd: str | list[str], *, cwd: str = ".",
        env: dict[str, str] | None = None, timeout: float | None = None,
    ) -> CommandResult:
        args = cmd.split() if isinstance(cmd, str) else list(cmd)
        service, stage = Path(cwd).name, args[-1]
        with self._lock:
            self.calls.append(Call(service, stage, args, env, timeout))
            resp = self.responses.get((service, stage))
            if isinstance(resp, list):
                resp = resp.pop(0) if len(resp) > 1 else resp[0]
        if resp is None:
            return CommandResult(0, f"{stage} ok\n", "", " ".join(args))
        if isinstance(resp, BaseException):
            raise resp
        if callable(resp):
            return resp(Path(cwd))
        return resp

    def stages(self, service: str) -> list[str]:
        with self._lock:
            return [c.stage for c in self.calls if c.service == service]


class FakeAdapter(BuildAdapter):
    kind = BuildKind.MAVEN
    tool = "fake"
    tool_hint = "install fake"
    setup_cmd = ["fake", "setup"]
    compile_cmd = ["fake", "compile"]
    test_cmd = ["fake", "test"]
    transient_markers = ("Connection reset",)


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def cache(tmp_path: Path) -> CacheCoordinator:
    return CacheCoordinator(tmp_path / "cache")


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def fake_adapters(executor: FakeExecutor) -> dict[BuildKind, BuildAdapter]:
    return {kind: FakeAdapter(executor) for kind in BuildKind}


@pytest.fixture()
def step_runner(
    cache: CacheCoordinator, fake_adapters: dict[BuildKind, BuildAdapter],
    sleeps: list[float],
) -> BuildStepRunner:
    return BuildStepRunner(
        cache, fake_adapters, max_retries=2, retry_backoff=1.0,
        retry_max_delay=3.0, sleep=sleeps.append,
    )


@pytest.fixture()
def make_service(tmp_path: Path) -> Callable[..., ServiceDescriptor]:
    """在临时工作区创建服务目录，默认预置一个非空产物 out/<name>.jar"""

    def _make(
        name: str, *deps: str, kind: BuildKind = BuildKind.MAVEN,
        artifact: ArtifactRule | None = ArtifactRule("out/*.jar"),
        with_artifact: bool = True, **kwargs: Any,
    ) -> ServiceDescriptor:
        workdir = tmp_path / "ws" / name
        workdir.mkdir(parents=True, exist_ok=True)
        if with_artifact:
            (workdir / "out").mkdir(exist_ok=True)
            (workdir / "out" / f"{name}.jar").write_bytes(b"PK\x03\x04")
        return ServiceDescriptor(
            name=name, kind=kind, workdir=workdir,
            depends_on=tuple(deps), artifact=artifact, **kwargs,
        )

    return _make


def svc(name: str, *deps: str, **kwargs: Any) -> ServiceDescriptor:
    """不落盘的服务描述（调度器 / 依赖图测试用）"""
    kwargs.setdefault("kind", BuildKind.MAVEN)
    return ServiceDescriptor(
        name=name, workdir=Path("/nonexistent") / name,
        depends_on=tuple(deps), **kwargs,
    )


@pytest.fixture(name="svc")
def svc_fixture() -> Callable[..., ServiceDescriptor]:
    return svc


class ScriptedRunner:
    """按脚本返回结果的执行器，记录并发峰值、启动顺序与依赖违例"""

    def __init__(
        self,
        failures: dict[str, Stage] | None = None,
        raises: set[str] | None = None,
        delay: float = 0.0,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.raises = set(raises or ())
        self.delay = delay
        self.delays = dict(delays or {})
        self.started: list[str] = []
        self.finished: list[str] = []
        self.succeeded: set[str] = set()
        self.violations: list[str] = []
        self.running = 0
        self.peak = 0
        self._lock = threading.Lock()

    def run(self, desc: ServiceDescriptor) -> BuildStepResult:
        with self._lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
            self.started.append(desc.name)
            missing = [d for d in desc.depends_on if d not in self.succeeded]
            if missing:
                self.violations.append(f"{desc.name} 在 {missing} 成功前启动")
        result: BuildStepResult | None = None
        try:
            time.sleep(self.delays.get(desc.name, self.delay))
            if desc.name in self.raises:
                raise RuntimeError(f"{desc.name} exploded")
            stage = self.failures.get(desc.name)
            if stage is not None:
                result = BuildStepResult(
                    service=desc.name, stage=stage, outcome=Outcome.FAILED,
                    error=ErrorDetail(
                        kind=ErrorKind.STAGE_FAILURE,
                        message=f"{stage.value} 失败 (rc=1)", exit_code=1,
                        output_tail="error: cannot find symbol",
                    ),
                )
            else:
                result = BuildStepResult(
                    service=desc.name, stage=Stage.VERIFY, outcome=Outcome.SUCCESS,
                    artifacts=(f"/artifacts/{desc.name}.jar",),
                )
            return result
        finally:
            with self._lock:
                self.running -= 1
                self.finished.append(desc.name)
                if result is not None and result.succeeded:
                    self.succeeded.add(desc.name)


@pytest.fixture()
def scripted() -> Callable[..., ScriptedRunner]:
    return ScriptedRunner
