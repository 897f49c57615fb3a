"""核心数据模型

服务描述、单服务构建结果、整次运行报告集中定义于此，
graph / scheduler / runner / aggregator 统一从这里导入。
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

# =========================================================================
# 枚举
# =========================================================================


class BuildKind(str, Enum):
    """构建类型（封闭集合，每种对应一个命令适配器）"""
    MAVEN = "maven"
    GO = "go"
    NODE = "node"


class Stage(str, Enum):
    """构建阶段，按执行顺序排列"""
    SETUP = "setup"
    COMPILE = "compile"
    TEST = "test"
    VERIFY = "verify"


class Outcome(str, Enum):
    """单服务终态"""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorKind(str, Enum):
    """失败原因分类，报告中用于区分根因"""
    STAGE_FAILURE = "stage_failure"
    TIMEOUT = "timeout"
    TOOL_MISSING = "tool_missing"
    TRANSIENT = "transient"
    ARTIFACT_MISSING = "artifact_missing"
    INTERNAL_ERROR = "internal_error"


class SkipReason(str, Enum):
    """跳过原因"""
    DEPENDENCY_FAILED = "dependency_failed"
    CANCELLED = "cancelled"


# =========================================================================
# 服务描述
# =========================================================================


@dataclass(frozen=True)
class ArtifactRule:
    """产物校验规则

    pattern 为相对 workdir 的 glob；count 为期望的精确匹配数，
    None 表示至少一个；min_size 为每个产物的最小字节数（默认非空）。
    """

    pattern: str
    count: int | None = 1
    min_size: int = 1

    def match(self, workdir: Path) -> list[Path]:
        """返回 workdir 下匹配 pattern 的文件（按路径排序）"""
        return sorted(p for p in workdir.glob(self.pattern) if p.is_file())

    def describe(self) -> str:
        expect = "至少 1 个" if self.count is None else f"恰好 {self.count} 个"
        return f"{expect}匹配 '{self.pattern}' 且不小于 {self.min_size} 字节的文件"


@dataclass(frozen=True)
class ServiceDescriptor:
    """单个服务的静态描述，加载后不可变"""

    name: str
    kind: BuildKind
    workdir: Path
    depends_on: tuple[str, ...] = ()
    artifact: ArtifactRule | None = None
    required: bool = True          # False: 失败不影响整体结论
    run_tests: bool = True         # False: 无测试，test 阶段记为说明
    tests_advisory: bool = False   # True: 测试失败仅记录说明
    env: tuple[tuple[str, str], ...] = ()

    @property
    def env_vars(self) -> dict[str, str]:
        return dict(self.env)


# =========================================================================
# 构建结果
# =========================================================================


@dataclass(frozen=True)
class ErrorDetail:
    """失败详情：错误分类 + 退出码 + 输出尾部摘录"""

    kind: ErrorKind
    message: str
    exit_code: int | None = None
    output_tail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "exit_code": self.exit_code,
            "output_tail": self.output_tail,
        }


@dataclass(frozen=True)
class StageRecord:
    """单个阶段的执行记录"""

    stage: Stage
    status: str  # "passed" | "failed" | "skipped" | "advisory"
    duration: float = 0.0
    exit_code: int | None = None
    attempts: int = 1
    log_tail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "status": self.status,
            "duration": round(self.duration, 3),
            "exit_code": self.exit_code,
            "attempts": self.attempts,
            "log_tail": self.log_tail,
        }


@dataclass(frozen=True)
class BuildStepResult:
    """单服务单次运行的构建结果，执行器结束后不可变"""

    service: str
    stage: Stage
    outcome: Outcome
    duration: float = 0.0
    error: ErrorDetail | None = None
    artifacts: tuple[str, ...] = ()
    stages: tuple[StageRecord, ...] = ()
    notes: tuple[str, ...] = ()
    skip_reason: SkipReason | None = None
    blocked_by: str = ""

    @property
    def artifact_path(self) -> str:
        return self.artifacts[0] if self.artifacts else ""

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @classmethod
    def skipped(
        cls, service: str, reason: SkipReason, blocked_by: str = "",
    ) -> BuildStepResult:
        """构造未执行的跳过结果"""
        if reason is SkipReason.DEPENDENCY_FAILED:
            note = f"依赖 '{blocked_by}' 未成功，跳过"
        else:
            note = "fail-fast 已取消，未启动"
        return cls(
            service=service, stage=Stage.SETUP, outcome=Outcome.SKIPPED,
            notes=(note,), skip_reason=reason, blocked_by=blocked_by,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "stage": self.stage.value,
            "outcome": self.outcome.value,
            "duration": round(self.duration, 3),
            "artifact_path": self.artifact_path,
            "artifacts": list(self.artifacts),
            "error": self.error.to_dict() if self.error else None,
            "stages": [s.to_dict() for s in self.stages],
            "notes": list(self.notes),
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "blocked_by": self.blocked_by,
        }


class RunReport:
    """一次运行的报告：service -> BuildStepResult

    运行开始时为空，服务完成时逐条写入（每个服务只写一次），
    依赖图排空后 finalize。写入由锁保护，重复写入视为编程错误。
    """

    def __init__(self, services: list[str] | None = None) -> None:
        self.services: list[str] = sorted(services or [])
        self.started_at = time.time()
        self.finished_at = 0.0
        self._results: dict[str, BuildStepResult] = {}
        self._lock = threading.Lock()

    def record(self, result: BuildStepResult) -> None:
        with self._lock:
            if self.finished_at:
                raise ValueError("报告已 finalize，不能再写入")
            if result.service in self._results:
                raise ValueError(f"服务 '{result.service}' 的结果已写入")
            self._results[result.service] = result

    def get(self, service: str) -> BuildStepResult | None:
        with self._lock:
            return self._results.get(service)

    def __contains__(self, service: object) -> bool:
        with self._lock:
            return service in self._results

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    @property
    def results(self) -> list[BuildStepResult]:
        """按服务名排序的结果列表"""
        with self._lock:
            return [self._results[k] for k in sorted(self._results)]

    def finalize(self) -> None:
        with self._lock:
            self.finished_at = time.time()

    @property
    def finalized(self) -> bool:
        return self.finished_at > 0

    @property
    def elapsed(self) -> float:
        end = self.finished_at or time.time()
        return end - self.started_at
