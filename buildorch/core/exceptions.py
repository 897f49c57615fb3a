"""统一异常体系

所有业务异常继承 BuildOrchError，每个类携带稳定的 code。
ConfigurationError 在任何服务执行前抛出并终止整次运行；
StageFailure / ArtifactMissing / TransientEnvironmentError 由构建执行器
在单个服务内部捕获，转换为 BuildStepResult 数据，不会中断其他分支。
"""

from __future__ import annotations


class BuildOrchError(Exception):
    """框架基础异常"""

    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)


# =========================================================================
# 配置类错误 - 执行前致命
# =========================================================================


class ConfigurationError(BuildOrchError):
    """服务清单或依赖图配置无效"""

    code = "CONFIG_ERROR"


class ValidationError(ConfigurationError):
    """服务描述字段校验失败"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class CycleDetectedError(ConfigurationError):
    """依赖图存在环"""

    code = "CYCLE_DETECTED"

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"依赖图存在环: {' -> '.join(cycle)}")
        self.cycle = cycle


class UnknownDependencyError(ConfigurationError):
    """依赖了未注册的服务"""

    code = "UNKNOWN_DEPENDENCY"

    def __init__(self, service: str, dependency: str) -> None:
        if service:
            message = f"服务 '{service}' 依赖未注册的服务 '{dependency}'"
        else:
            message = f"未注册的服务: '{dependency}'"
        super().__init__(message)
        self.service = service
        self.dependency = dependency


# =========================================================================
# 执行类错误 - 隔离在单个服务内
# =========================================================================


class StageFailure(BuildOrchError):
    """某个构建阶段失败（工具非零退出 / 超时 / 工具缺失）"""

    code = "STAGE_FAILURE"

    def __init__(
        self, message: str, *, stage: str,
        exit_code: int | None = None, output_tail: str = "",
        kind: str = "stage_failure",
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.exit_code = exit_code
        self.output_tail = output_tail
        self.kind = kind


class ArtifactMissing(BuildOrchError):
    """编译测试均通过，但产物校验不满足规则"""

    code = "ARTIFACT_MISSING"

    def __init__(self, message: str, *, pattern: str, found: list[str] | None = None) -> None:
        super().__init__(message)
        self.pattern = pattern
        self.found = found or []


class TransientEnvironmentError(BuildOrchError):
    """可重试的环境错误（依赖下载网络抖动等）"""

    code = "TRANSIENT_ERROR"

    def __init__(
        self, message: str, *, stage: str,
        exit_code: int | None = None, output_tail: str = "",
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.exit_code = exit_code
        self.output_tail = output_tail

    def to_stage_failure(self, attempts: int) -> StageFailure:
        """重试耗尽后转换为 StageFailure"""
        return StageFailure(
            f"{self} (已重试 {attempts} 次)",
            stage=self.stage, exit_code=self.exit_code,
            output_tail=self.output_tail, kind="transient",
        )
