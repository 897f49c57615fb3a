"""CLI - 构建运行命令"""

from __future__ import annotations

import click

from buildorch.cli import _load_config
from buildorch.core.exceptions import ConfigurationError, ValidationError
from buildorch.core.reporter import available_formats, render
from buildorch.services.orchestrator import EXIT_CONFIG_ERROR, BuildOrchestrator


def register(group: click.Group) -> None:
    group.add_command(run)


def echo_config_error(e: ConfigurationError) -> None:
    click.echo(f"配置错误 [{e.code}]: {e}", err=True)
    if isinstance(e, ValidationError):
        for detail in e.details:
            click.echo(f"  - {detail}", err=True)


@click.command()
@click.option("--services", "-s", default=None, help="服务清单文件（覆盖配置）")
@click.option("--parallel", "-p", type=int, default=None, help="最大并行构建数")
@click.option("--fail-fast/--best-effort", default=None, help="首个失败后是否取消未启动的服务")
@click.option("--only", multiple=True, help="只构建指定服务及其依赖（可多次指定）")
@click.option(
    "--format", "-f", "formats", multiple=True,
    type=click.Choice(available_formats()), help="报告格式（可多次指定）",
)
@click.option("--report-dir", default=None, help="报告输出目录")
@click.pass_context
def run(
    ctx: click.Context, services: str | None, parallel: int | None,
    fail_fast: bool | None, only: tuple[str, ...],
    formats: tuple[str, ...], report_dir: str | None,
) -> None:
    """按依赖顺序构建全部服务"""
    try:
        cfg = _load_config(
            ctx,
            services_file=services,
            max_workers=parallel,
            fail_fast=fail_fast,
            report_formats=list(formats) or None,
            report_dir=report_dir,
        )
        result = BuildOrchestrator(cfg).run(only=list(only) or None)
    except ConfigurationError as e:
        echo_config_error(e)
        ctx.exit(EXIT_CONFIG_ERROR)

    click.echo(render(result.summary, "text"), nl=False)
    for path in result.report_files:
        click.echo(f"报告: {path}")
    if result.artifact_manifest:
        click.echo(f"产物清单: {result.artifact_manifest}")
    ctx.exit(result.exit_code)
