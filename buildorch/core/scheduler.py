"""构建调度器 - 有界并行执行依赖图

调度规则:
  - 节点的全部依赖结果为 success 时才可运行，不等待整层完成
  - 同时运行的节点数不超过 max_workers；任一节点完成后重新评估可运行节点
  - 依赖失败或被跳过的节点标记 skipped，沿下游传递
  - 每个节点至多尝试一次，重试由构建执行器在阶段内部处理
  - fail_fast: 首个 failed 后停止派发，已在运行的节点自然结束，其余未启动节点标记 skipped
  - best-effort（默认）: 失败只影响其下游，无关分支继续执行

节点状态保存在按服务名索引的表中，只有调度线程写入状态和报告。
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Protocol

from buildorch.core import events as ev
from buildorch.core.events import EventBus
from buildorch.core.graph import BuildGraph
from buildorch.core.models import (
    BuildStepResult,
    ErrorDetail,
    ErrorKind,
    Outcome,
    RunReport,
    ServiceDescriptor,
    SkipReason,
    Stage,
)

logger = logging.getLogger(__name__)


class StepRunner(Protocol):
    """单服务执行器协议（BuildStepRunner 或测试替身）"""

    def run(self, desc: ServiceDescriptor) -> BuildStepResult:
        ...


class NodeState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"


class Scheduler:
    """可配置并行度的依赖图调度器"""

    def __init__(
        self,
        max_workers: int = 1,
        *,
        fail_fast: bool = False,
        events: EventBus | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers 必须 >= 1 (当前 {max_workers})")
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.events = events or EventBus()

    def run(self, graph: BuildGraph, runner: StepRunner) -> RunReport:
        """执行整张依赖图直到每个节点都有终态"""
        report = RunReport(list(graph))
        states: dict[str, NodeState] = {name: NodeState.PENDING for name in graph}
        waiting: dict[str, set[str]] = {
            name: set(graph.dependencies_of(name)) for name in graph
        }
        ready: list[str] = sorted(name for name, deps in waiting.items() if not deps)
        in_flight: dict[Future[BuildStepResult], str] = {}
        cancelled = False

        self.events.emit(
            ev.RUN_STARTED, services=list(graph), layers=[list(layer) for layer in graph.layers],
            max_workers=self.max_workers, fail_fast=self.fail_fast,
        )

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="buildorch",
        ) as pool:
            while ready or in_flight:
                while ready and not cancelled and len(in_flight) < self.max_workers:
                    name = ready.pop(0)
                    states[name] = NodeState.RUNNING
                    self.events.emit(ev.NODE_STARTED, name, running=len(in_flight) + 1)
                    in_flight[pool.submit(self._execute, runner, graph.get(name))] = name

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: in_flight[f]):
                    name = in_flight.pop(fut)
                    result = fut.result()
                    states[name] = NodeState.DONE
                    report.record(result)
                    self.events.emit(
                        ev.NODE_FINISHED, name, outcome=result.outcome.value,
                        stage=result.stage.value, duration=round(result.duration, 3),
                    )

                    if result.succeeded:
                        ready.extend(self._release(graph, name, waiting, states))
                        ready.sort()
                        continue

                    self._propagate_skip(graph, name, states, report)
                    if self.fail_fast and not cancelled:
                        cancelled = True
                        logger.warning("fail-fast: %s 失败，停止派发新节点", name)
                        self.events.emit(ev.RUN_CANCELLED, name, running=sorted(in_flight.values()))

        if cancelled:
            for name in graph:
                if states[name] is NodeState.PENDING:
                    states[name] = NodeState.DONE
                    self._skip(report, BuildStepResult.skipped(name, SkipReason.CANCELLED))

        report.finalize()
        self.events.emit(
            ev.RUN_FINISHED,
            outcomes={r.service: r.outcome.value for r in report.results},
            elapsed=round(report.elapsed, 3),
        )
        return report

    @staticmethod
    def _release(
        graph: BuildGraph, name: str,
        waiting: dict[str, set[str]], states: dict[str, NodeState],
    ) -> list[str]:
        """标记依赖 name 已成功，返回因此变为可运行的下游节点"""
        released = []
        for child in graph.dependents_of(name):
            waiting[child].discard(name)
            if not waiting[child] and states[child] is NodeState.PENDING:
                released.append(child)
        return released

    def _propagate_skip(
        self, graph: BuildGraph, failed: str,
        states: dict[str, NodeState], report: RunReport,
    ) -> None:
        """把失败沿下游传递为 skipped，blocked_by 记录直接阻塞的上游"""
        queue = [(child, failed) for child in graph.dependents_of(failed)]
        while queue:
            node, parent = queue.pop(0)
            if states[node] is not NodeState.PENDING:
                continue
            states[node] = NodeState.DONE
            self._skip(report, BuildStepResult.skipped(
                node, SkipReason.DEPENDENCY_FAILED, blocked_by=parent,
            ))
            queue.extend((child, node) for child in graph.dependents_of(node))

    def _skip(self, report: RunReport, result: BuildStepResult) -> None:
        report.record(result)
        reason = result.skip_reason.value if result.skip_reason else ""
        logger.info("跳过: %s (%s %s)", result.service, reason, result.blocked_by)
        self.events.emit(
            ev.NODE_SKIPPED, result.service, reason=reason, blocked_by=result.blocked_by,
        )

    @staticmethod
    def _execute(runner: StepRunner, desc: ServiceDescriptor) -> BuildStepResult:
        """在工作线程中执行单个节点；执行器自身的异常也转为失败结果"""
        try:
            return runner.run(desc)
        except Exception as e:  # noqa: BLE001
            logger.exception("执行服务 '%s' 时出现未预期错误", desc.name)
            return BuildStepResult(
                service=desc.name, stage=Stage.SETUP, outcome=Outcome.FAILED,
                error=ErrorDetail(
                    kind=ErrorKind.INTERNAL_ERROR,
                    message=f"{type(e).__name__}: {e}",
                ),
            )
