"""构建执行器

职责:
- 按 setup → compile → test → verify 顺序执行单个服务的构建
- setup 阶段通过 CacheCoordinator 获取共享依赖缓存
- 阶段失败立即停止后续阶段，失败以 BuildStepResult 数据返回，不向外抛出
- 仅 setup 阶段的网络类错误按指数退避有限重试；编译 / 测试失败从不重试
- 产物校验失败单独记为 artifact_missing，与编译测试失败区分
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Mapping

from buildorch.core.exceptions import (
    ArtifactMissing,
    StageFailure,
    TransientEnvironmentError,
)
from buildorch.core.models import (
    BuildKind,
    BuildStepResult,
    ErrorDetail,
    ErrorKind,
    Outcome,
    ServiceDescriptor,
    Stage,
    StageRecord,
)
from buildorch.services.build.adapters import BuildAdapter, create_adapters
from buildorch.utils.shell import CommandExecutor, CommandResult, tail

if TYPE_CHECKING:
    from buildorch.core.config import Config
    from buildorch.services.build.cache import CacheCoordinator

logger = logging.getLogger(__name__)


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


class BuildStepRunner:
    """单服务构建执行器"""

    def __init__(
        self,
        cache: CacheCoordinator,
        adapters: Mapping[BuildKind, BuildAdapter] | None = None,
        *,
        executor: CommandExecutor | None = None,
        stage_timeouts: Mapping[str, float] | None = None,
        default_timeout: float | None = 1800,
        max_retries: int = 2,
        retry_backoff: float = 2.0,
        retry_max_delay: float = 30.0,
        output_tail_lines: int = 40,
        log_dir: str | Path = "",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cache = cache
        self.adapters = dict(adapters) if adapters is not None else create_adapters(executor)
        self.stage_timeouts = dict(stage_timeouts or {})
        self.default_timeout = default_timeout
        self.max_retries = max(0, max_retries)
        self.retry_backoff = retry_backoff
        self.retry_max_delay = retry_max_delay
        self.output_tail_lines = output_tail_lines
        self.log_dir = Path(log_dir) if log_dir else None
        self._sleep = sleep

    @classmethod
    def from_config(
        cls, config: Config, cache: CacheCoordinator,
        executor: CommandExecutor | None = None,
    ) -> BuildStepRunner:
        return cls(
            cache,
            executor=executor,
            stage_timeouts=config.stage_timeouts,
            default_timeout=config.default_timeout,
            max_retries=config.max_retries,
            retry_backoff=config.retry_backoff,
            retry_max_delay=config.retry_max_delay,
            output_tail_lines=config.output_tail_lines,
            log_dir=config.log_dir,
        )

    # ---- 入口 ----

    def run(self, desc: ServiceDescriptor) -> BuildStepResult:
        """执行单个服务的全部阶段，返回不可变结果"""
        start = time.monotonic()
        records: list[StageRecord] = []
        notes: list[str] = []
        logger.info("开始构建: %s (%s, cwd=%s)", desc.name, desc.kind.value, desc.workdir)
        self._reset_logs(desc)

        try:
            adapter = self.adapters[desc.kind]
            if not desc.workdir.is_dir():
                raise StageFailure(
                    f"工作目录不存在: {desc.workdir}", stage=Stage.SETUP.value,
                )
            env = self._build_env(desc, adapter)
            self._setup(desc, adapter, env, records)
            self._compile(desc, adapter, env, records)
            self._test(desc, adapter, env, records, notes)
            artifacts = self._verify(desc, records, notes)
        except StageFailure as e:
            duration = time.monotonic() - start
            logger.error("构建失败 %s [%s]: %s", desc.name, e.stage, e)
            return BuildStepResult(
                service=desc.name, stage=Stage(e.stage), outcome=Outcome.FAILED,
                duration=duration,
                error=ErrorDetail(
                    kind=ErrorKind(e.kind), message=str(e),
                    exit_code=e.exit_code, output_tail=e.output_tail,
                ),
                stages=tuple(records), notes=tuple(notes),
            )
        except ArtifactMissing as e:
            duration = time.monotonic() - start
            logger.error("产物缺失 %s: %s", desc.name, e)
            return BuildStepResult(
                service=desc.name, stage=Stage.VERIFY, outcome=Outcome.FAILED,
                duration=duration,
                error=ErrorDetail(
                    kind=ErrorKind.ARTIFACT_MISSING, message=str(e),
                    output_tail="\n".join(e.found),
                ),
                stages=tuple(records), notes=tuple(notes),
            )

        duration = time.monotonic() - start
        logger.info("构建完成: %s (%.1fs, 产物=%s)", desc.name, duration, list(artifacts))
        return BuildStepResult(
            service=desc.name, stage=Stage.VERIFY, outcome=Outcome.SUCCESS,
            duration=duration, artifacts=tuple(artifacts),
            stages=tuple(records), notes=tuple(notes),
        )

    # ---- 阶段 ----

    def _setup(
        self, desc: ServiceDescriptor, adapter: BuildAdapter,
        env: dict[str, str], records: list[StageRecord],
    ) -> None:
        """拉取依赖，网络类错误按退避重试"""
        attempt = 0
        elapsed = 0.0
        while True:
            result, duration = self._invoke(desc, adapter, Stage.SETUP, env, records, attempt + 1)
            elapsed += duration
            if result.success:
                records.append(StageRecord(
                    stage=Stage.SETUP, status="passed", duration=elapsed,
                    exit_code=0, attempts=attempt + 1,
                    log_tail=self._tail(result.output),
                ))
                return

            if not adapter.is_transient(result):
                records.append(self._failed_record(Stage.SETUP, elapsed, result, attempt + 1))
                raise self._stage_failure(Stage.SETUP, result)

            transient = TransientEnvironmentError(
                f"{desc.name} 依赖拉取遇到网络错误 (rc={result.returncode})",
                stage=Stage.SETUP.value, exit_code=result.returncode,
                output_tail=self._tail(result.output),
            )
            if attempt >= self.max_retries:
                records.append(self._failed_record(Stage.SETUP, elapsed, result, attempt + 1))
                raise transient.to_stage_failure(attempt)

            delay = self._backoff(attempt)
            logger.warning(
                "%s: %s，%.1f 秒后重试 (%d/%d)",
                desc.name, transient, delay, attempt + 1, self.max_retries,
            )
            self._sleep(delay)
            attempt += 1

    def _compile(
        self, desc: ServiceDescriptor, adapter: BuildAdapter,
        env: dict[str, str], records: list[StageRecord],
    ) -> None:
        result, duration = self._invoke(desc, adapter, Stage.COMPILE, env, records, 1)
        if not result.success:
            records.append(self._failed_record(Stage.COMPILE, duration, result, 1))
            raise self._stage_failure(Stage.COMPILE, result)
        records.append(StageRecord(
            stage=Stage.COMPILE, status="passed", duration=duration,
            exit_code=0, log_tail=self._tail(result.output),
        ))

    def _test(
        self, desc: ServiceDescriptor, adapter: BuildAdapter,
        env: dict[str, str], records: list[StageRecord], notes: list[str],
    ) -> None:
        if not desc.run_tests:
            records.append(StageRecord(stage=Stage.TEST, status="skipped"))
            notes.append("未配置测试，test 阶段跳过")
            return

        result, duration = self._invoke(desc, adapter, Stage.TEST, env, records, 1)
        if result.success:
            records.append(StageRecord(
                stage=Stage.TEST, status="passed", duration=duration,
                exit_code=0, log_tail=self._tail(result.output),
            ))
            return
        if desc.tests_advisory:
            records.append(StageRecord(
                stage=Stage.TEST, status="advisory", duration=duration,
                exit_code=result.returncode, log_tail=self._tail(result.output),
            ))
            notes.append(f"测试失败 (rc={result.returncode})，已标记为仅供参考，不影响结论")
            logger.warning("%s: 参考性测试失败 (rc=%d)", desc.name, result.returncode)
            return
        records.append(self._failed_record(Stage.TEST, duration, result, 1))
        raise self._stage_failure(Stage.TEST, result)

    def _verify(
        self, desc: ServiceDescriptor, records: list[StageRecord], notes: list[str],
    ) -> list[str]:
        """校验产物规则，返回产物路径"""
        rule = desc.artifact
        if rule is None:
            records.append(StageRecord(stage=Stage.VERIFY, status="skipped"))
            notes.append("未配置产物规则，跳过产物校验")
            return []

        start = time.monotonic()
        matches = rule.match(desc.workdir)
        too_small = [p for p in matches if p.stat().st_size < rule.min_size]
        count_ok = bool(matches) if rule.count is None else len(matches) == rule.count
        duration = time.monotonic() - start

        if not count_ok or too_small:
            found = [f"{p} ({p.stat().st_size} 字节)" for p in matches]
            records.append(StageRecord(
                stage=Stage.VERIFY, status="failed", duration=duration,
                log_tail="\n".join(found),
            ))
            if too_small:
                reason = f"{len(too_small)} 个产物小于 {rule.min_size} 字节"
            else:
                reason = f"找到 {len(matches)} 个匹配"
            raise ArtifactMissing(
                f"产物校验失败: 期望{rule.describe()}，{reason}",
                pattern=rule.pattern, found=found,
            )

        records.append(StageRecord(stage=Stage.VERIFY, status="passed", duration=duration))
        return [str(p) for p in matches]

    # ---- 辅助 ----

    def _invoke(
        self, desc: ServiceDescriptor, adapter: BuildAdapter, stage: Stage,
        env: dict[str, str], records: list[StageRecord], attempt: int,
    ) -> tuple[CommandResult, float]:
        """调用适配器的单个阶段；超时和工具缺失转换为 StageFailure"""
        timeout = self._timeout(stage)
        method = getattr(adapter, stage.value)
        start = time.monotonic()
        try:
            result = method(desc.workdir, env, timeout)
        except subprocess.TimeoutExpired as e:
            duration = time.monotonic() - start
            output = _decode(e.stdout) + _decode(e.stderr)
            self._write_log(desc, stage, attempt, output)
            records.append(StageRecord(
                stage=stage, status="failed", duration=duration,
                attempts=attempt, log_tail=self._tail(output),
            ))
            raise StageFailure(
                f"{stage.value} 超时 ({timeout} 秒)", stage=stage.value,
                output_tail=self._tail(output), kind=ErrorKind.TIMEOUT.value,
            ) from e
        except OSError as e:
            duration = time.monotonic() - start
            records.append(StageRecord(
                stage=stage, status="failed", duration=duration, attempts=attempt,
            ))
            hint = f"；{adapter.tool_hint}" if adapter.tool_hint else ""
            raise StageFailure(
                f"无法启动 {adapter.tool or stage.value}: {e}{hint}",
                stage=stage.value, kind=ErrorKind.TOOL_MISSING.value,
            ) from e
        duration = time.monotonic() - start
        self._write_log(desc, stage, attempt, result.output)
        return result, duration

    def _build_env(self, desc: ServiceDescriptor, adapter: BuildAdapter) -> dict[str, str]:
        """进程环境 + 缓存指向 + 服务自定义变量（后者优先）"""
        env = dict(os.environ)
        cache_dir = self.cache.acquire(desc.kind)
        env.update(adapter.cache_env(cache_dir, env))
        env.update(desc.env_vars)
        return env

    def _timeout(self, stage: Stage) -> float | None:
        return self.stage_timeouts.get(stage.value, self.default_timeout)

    def _backoff(self, attempt: int) -> float:
        return min(self.retry_backoff * (2 ** attempt), self.retry_max_delay)

    def _tail(self, text: str) -> str:
        return tail(text, self.output_tail_lines)

    def _failed_record(
        self, stage: Stage, duration: float, result: CommandResult, attempts: int,
    ) -> StageRecord:
        return StageRecord(
            stage=stage, status="failed", duration=duration,
            exit_code=result.returncode, attempts=attempts,
            log_tail=self._tail(result.output),
        )

    def _stage_failure(self, stage: Stage, result: CommandResult) -> StageFailure:
        return StageFailure(
            f"{stage.value} 失败 (rc={result.returncode}): {result.command}",
            stage=stage.value, exit_code=result.returncode,
            output_tail=self._tail(result.output),
        )

    def _service_log_dir(self, desc: ServiceDescriptor) -> Path | None:
        if self.log_dir is None:
            return None
        return self.log_dir / desc.name

    def _reset_logs(self, desc: ServiceDescriptor) -> None:
        log_dir = self._service_log_dir(desc)
        if log_dir is None or not log_dir.exists():
            return
        for old in log_dir.glob("*.log"):
            old.unlink()

    def _write_log(self, desc: ServiceDescriptor, stage: Stage, attempt: int, output: str) -> None:
        log_dir = self._service_log_dir(desc)
        if log_dir is None:
            return
        log_dir.mkdir(parents=True, exist_ok=True)
        with open(log_dir / f"{stage.value}.log", "a", encoding="utf-8") as f:
            f.write(f"### attempt {attempt}\n{output}\n")
