"""结果汇总

把 RunReport 折叠为 RunSummary 并给出整体结论:
  - 所有 required 服务均 success 时整体 success
  - required 服务 failed 或因依赖失败被 skipped 均导致整体 failed
  - required=False 的服务失败只在汇总中列出，不影响结论
  - notes（无测试、参考性测试失败等）不影响结论

汇总按服务名排序，输出稳定，供报告和镜像构建阶段消费。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from buildorch.core.graph import BuildGraph
from buildorch.core.models import BuildStepResult, Outcome, RunReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RootCause:
    """失败根因：真正失败（而非被跳过）的服务"""

    service: str
    stage: str
    kind: str
    message: str
    required: bool = True

    def __str__(self) -> str:
        return f"{self.service}/{self.stage} ({self.kind}): {self.message}"


@dataclass
class RunSummary:
    """整次运行的汇总"""

    outcome: Outcome
    results: list[BuildStepResult] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    root_causes: list[RootCause] = field(default_factory=list)
    artifacts: dict[str, list[str]] = field(default_factory=dict)
    optional_failures: list[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def get(self, service: str) -> BuildStepResult | None:
        for r in self.results:
            if r.service == service:
                return r
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "elapsed": round(self.elapsed, 3),
            "counts": dict(self.counts),
            "root_causes": [
                {
                    "service": c.service, "stage": c.stage, "kind": c.kind,
                    "message": c.message, "required": c.required,
                }
                for c in self.root_causes
            ],
            "optional_failures": list(self.optional_failures),
            "artifacts": {k: list(v) for k, v in self.artifacts.items()},
            "services": [r.to_dict() for r in self.results],
        }


class ResultAggregator:
    """RunReport -> RunSummary"""

    def summarize(self, report: RunReport, graph: BuildGraph) -> RunSummary:
        if not report.finalized:
            raise ValueError("RunReport 尚未 finalize，调度未结束")

        missing = [name for name in graph if name not in report]
        if missing:
            raise ValueError(f"RunReport 缺少服务结果: {missing}")

        results = [r for r in report.results if r.service in graph]
        counts = {o.value: 0 for o in Outcome}
        root_causes: list[RootCause] = []
        artifacts: dict[str, list[str]] = {}
        optional_failures: list[str] = []
        required_ok = True

        for r in results:
            desc = graph.get(r.service)
            counts[r.outcome.value] += 1
            if r.succeeded:
                if r.artifacts:
                    artifacts[r.service] = list(r.artifacts)
                continue

            if desc.required:
                required_ok = False
            else:
                optional_failures.append(r.service)

            if r.outcome is Outcome.FAILED:
                root_causes.append(RootCause(
                    service=r.service,
                    stage=r.stage.value,
                    kind=r.error.kind.value if r.error else "unknown",
                    message=r.error.message if r.error else "",
                    required=desc.required,
                ))

        outcome = Outcome.SUCCESS if required_ok else Outcome.FAILED
        summary = RunSummary(
            outcome=outcome,
            results=results,
            counts=counts,
            root_causes=root_causes,
            artifacts=artifacts,
            optional_failures=optional_failures,
            elapsed=report.elapsed,
        )
        logger.info(
            "运行结论: %s (success=%d, failed=%d, skipped=%d)",
            outcome.value, counts["success"], counts["failed"], counts["skipped"],
        )
        for cause in root_causes:
            logger.error("根因: %s", cause)
        return summary
