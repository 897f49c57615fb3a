"""构建编排器 - 串联 清单 → 依赖图 → 调度 → 汇总 → 报告

步骤顺序:
1. load_graph - 加载服务清单，构建并校验依赖图（配置错误在此抛出，任何服务都不会启动）
2. schedule  - 有界并行执行全部节点
3. summarize - 汇总为 RunSummary，给出整体结论
4. publish   - 写出报告文件与镜像构建交接清单

退出码: 0 成功 / 1 构建失败 / 2 配置错误
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from buildorch.core.aggregator import ResultAggregator, RunSummary
from buildorch.core.config import Config
from buildorch.core.events import EventBus
from buildorch.core.graph import BuildGraph, build_graph
from buildorch.core.models import ServiceDescriptor
from buildorch.core.registry import ServiceRegistry
from buildorch.core.reporter import write_artifact_manifest, write_reports
from buildorch.core.scheduler import Scheduler, StepRunner
from buildorch.services.build.cache import CacheCoordinator
from buildorch.services.build.executor import BuildStepRunner
from buildorch.utils.shell import CommandExecutor

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_BUILD_FAILED = 1
EXIT_CONFIG_ERROR = 2


@dataclass
class OrchestrationReport:
    """一次编排的产出"""

    summary: RunSummary
    graph: BuildGraph
    report_files: list[str] = field(default_factory=list)
    artifact_manifest: str = ""

    @property
    def success(self) -> bool:
        return self.summary.success

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.success else EXIT_BUILD_FAILED


class BuildOrchestrator:
    """构建编排入口"""

    def __init__(
        self,
        config: Config | None = None,
        *,
        runner: StepRunner | None = None,
        executor: CommandExecutor | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.config = config or Config()
        self.cache = CacheCoordinator(self.config.cache_dir)
        self.runner = runner or BuildStepRunner.from_config(
            self.config, self.cache, executor=executor,
        )
        self.events = events or EventBus()
        self.aggregator = ResultAggregator()

    def load_graph(
        self,
        descriptors: Iterable[ServiceDescriptor] | None = None,
        only: Iterable[str] | None = None,
    ) -> BuildGraph:
        """步骤1: 构建依赖图；only 非空时取指定服务及其传递依赖"""
        if descriptors is None:
            registry = ServiceRegistry(
                self.config.services_file, root_dir=self.config.root_dir,
            )
            descriptors = registry.load()
        graph = build_graph(descriptors)
        selected = list(only or [])
        if selected:
            full = len(graph)
            graph = graph.select(selected)
            logger.info(
                "按选择构建 %s: %d/%d 个服务 (%s)",
                selected, len(graph), full, ", ".join(graph),
            )
        logger.info("依赖图就绪: %d 个服务, %d 层", len(graph), len(graph.layers))
        return graph

    def run(
        self,
        descriptors: Iterable[ServiceDescriptor] | None = None,
        only: Iterable[str] | None = None,
        *,
        publish: bool = True,
    ) -> OrchestrationReport:
        """执行完整编排；配置错误以 ConfigurationError 抛出"""
        graph = self.load_graph(descriptors, only)

        scheduler = Scheduler(
            max_workers=self.config.max_workers,
            fail_fast=self.config.fail_fast,
            events=self.events,
        )
        run_report = scheduler.run(graph, self.runner)
        summary = self.aggregator.summarize(run_report, graph)

        result = OrchestrationReport(summary=summary, graph=graph)
        if publish:
            out = Path(self.config.report_dir)
            result.report_files = write_reports(summary, out, self.config.report_formats)
            result.artifact_manifest = write_artifact_manifest(summary, out)
        return result
