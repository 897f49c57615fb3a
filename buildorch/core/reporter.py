"""运行报告生成器 - Strategy 模式

每种报告格式实现 ResultFormatter 接口，通过注册制工厂调用。
另外输出 artifacts.json 交接清单，只包含成功服务的产物路径，
供下游镜像构建阶段消费。
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from xml.sax.saxutils import escape as xml_escape
from xml.sax.saxutils import quoteattr as xml_quoteattr

from buildorch.core.aggregator import RunSummary
from buildorch.core.models import Outcome
from buildorch.utils.yaml_io import atomic_write

logger = logging.getLogger(__name__)

ARTIFACT_MANIFEST = "artifacts.json"

# XML 1.0 不允许的控制字符（保留 \t \n \r）
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def _xml_text(text: str) -> str:
    return _CONTROL_CHARS.sub("", text)


# =========================================================================
# Strategy: ResultFormatter
# =========================================================================


class ResultFormatter(ABC):
    """报告格式化策略基类"""

    @abstractmethod
    def format(self, summary: RunSummary) -> str:
        """将运行汇总格式化为字符串"""

    @abstractmethod
    def extension(self) -> str:
        """输出文件扩展名（不含 .）"""


class JSONReportFormatter(ResultFormatter):
    def format(self, summary: RunSummary) -> str:
        return json.dumps(summary.to_dict(), indent=2, ensure_ascii=False)

    def extension(self) -> str:
        return "json"


class JUnitFormatter(ResultFormatter):
    """每个服务一个 testcase，CI 系统可直接展示"""

    def format(self, summary: RunSummary) -> str:
        testcases = ""
        for r in summary.results:
            name_attr = xml_quoteattr(r.service)
            head = f'    <testcase classname="buildorch" name={name_attr} time="{r.duration:.1f}"'
            if r.outcome is Outcome.SUCCESS:
                testcases += f"{head}/>\n"
            elif r.outcome is Outcome.FAILED:
                kind = r.error.kind.value if r.error else "unknown"
                msg = r.error.message if r.error else ""
                body = xml_escape(_xml_text(r.error.output_tail)) if r.error else ""
                testcases += (
                    f"{head}>\n"
                    f"      <failure message={xml_quoteattr(_xml_text(f'{r.stage.value}: {msg}'))}"
                    f" type={xml_quoteattr(kind)}>{body}</failure>\n"
                    f"    </testcase>\n"
                )
            else:
                note = "; ".join(r.notes)
                testcases += (
                    f"{head}>\n"
                    f"      <skipped message={xml_quoteattr(_xml_text(note))}/>\n"
                    f"    </testcase>\n"
                )

        counts = summary.counts
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<testsuite name="buildorch" tests="{len(summary.results)}" '
            f'failures="{counts.get("failed", 0)}" errors="0" '
            f'skipped="{counts.get("skipped", 0)}" time="{summary.elapsed:.1f}">\n'
            f"{testcases}"
            "</testsuite>\n"
        )

    def extension(self) -> str:
        return "xml"


class TextFormatter(ResultFormatter):
    """终端可读的汇总表"""

    def format(self, summary: RunSummary) -> str:
        width = max([len("SERVICE")] + [len(r.service) for r in summary.results])
        lines = [
            f"{'SERVICE':<{width}}  {'OUTCOME':<8}  {'STAGE':<8}  {'TIME':>7}  ARTIFACT",
        ]
        for r in summary.results:
            lines.append(
                f"{r.service:<{width}}  {r.outcome.value:<8}  {r.stage.value:<8}  "
                f"{r.duration:>6.1f}s  {r.artifact_path or '-'}"
            )
        lines.append("")
        lines.append(
            f"结论: {summary.outcome.value.upper()}  "
            f"(success={summary.counts.get('success', 0)}, "
            f"failed={summary.counts.get('failed', 0)}, "
            f"skipped={summary.counts.get('skipped', 0)}, "
            f"{summary.elapsed:.1f}s)"
        )
        for cause in summary.root_causes:
            flag = "" if cause.required else " [optional]"
            lines.append(f"  根因{flag}: {cause}")
            result = summary.get(cause.service)
            if result and result.error and result.error.output_tail:
                for out_line in result.error.output_tail.splitlines():
                    lines.append(f"    | {out_line}")
        for r in summary.results:
            for note in r.notes:
                lines.append(f"  说明: {r.service}: {note}")
        return "\n".join(lines) + "\n"

    def extension(self) -> str:
        return "txt"


# =========================================================================
# 注册制工厂
# =========================================================================

_formatters: dict[str, type[ResultFormatter]] = {
    "json": JSONReportFormatter,
    "junit": JUnitFormatter,
    "text": TextFormatter,
}


def register_formatter(name: str, cls: type[ResultFormatter]) -> None:
    """注册自定义报告格式"""
    _formatters[name] = cls


def available_formats() -> list[str]:
    return sorted(_formatters)


def get_formatter(fmt: str) -> ResultFormatter:
    formatter_cls = _formatters.get(fmt)
    if formatter_cls is None:
        raise ValueError(f"不支持的格式: {fmt}（可用: {available_formats()}）")
    return formatter_cls()


def render(summary: RunSummary, fmt: str = "text") -> str:
    return get_formatter(fmt).format(summary)


def write_reports(
    summary: RunSummary, output_dir: str | Path, formats: list[str] | tuple[str, ...],
) -> list[str]:
    """按格式写出报告文件，返回生成的文件路径"""
    out = Path(output_dir)
    paths = []
    for fmt in formats:
        formatter = get_formatter(fmt)
        path = out / f"report.{formatter.extension()}"
        atomic_write(path, formatter.format(summary))
        paths.append(str(path))
    logger.info("报告已生成: %s", paths)
    return paths


def write_artifact_manifest(summary: RunSummary, output_dir: str | Path) -> str:
    """写出镜像构建交接清单（仅成功服务）"""
    path = Path(output_dir) / ARTIFACT_MANIFEST
    payload = {
        "outcome": summary.outcome.value,
        "services": [
            {"service": name, "artifacts": paths}
            for name, paths in sorted(summary.artifacts.items())
        ],
    }
    atomic_write(path, json.dumps(payload, indent=2, ensure_ascii=False))
    logger.info("产物清单已生成: %s (%d 个服务)", path, len(summary.artifacts))
    return str(path)
