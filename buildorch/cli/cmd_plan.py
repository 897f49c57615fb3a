"""CLI - 依赖图与缓存查看"""

from __future__ import annotations

import click

from buildorch.cli import _load_config
from buildorch.cli.cmd_run import echo_config_error
from buildorch.core.exceptions import ConfigurationError
from buildorch.core.graph import build_graph
from buildorch.core.registry import ServiceRegistry
from buildorch.services.build.cache import CacheCoordinator
from buildorch.services.orchestrator import EXIT_CONFIG_ERROR


def register(group: click.Group) -> None:
    group.add_command(plan)
    group.add_command(cache)


@click.command()
@click.option("--services", "-s", default=None, help="服务清单文件（覆盖配置）")
@click.option("--only", multiple=True, help="只查看指定服务及其依赖")
@click.pass_context
def plan(ctx: click.Context, services: str | None, only: tuple[str, ...]) -> None:
    """校验依赖图并按层列出构建顺序"""
    try:
        cfg = _load_config(ctx, services_file=services)
        registry = ServiceRegistry(cfg.services_file, root_dir=cfg.root_dir)
        graph = build_graph(registry.load())
        if only:
            graph = graph.select(only)
    except ConfigurationError as e:
        echo_config_error(e)
        ctx.exit(EXIT_CONFIG_ERROR)

    for idx, layer in enumerate(graph.layers):
        click.echo(f"第 {idx + 1} 层:")
        for name in layer:
            desc = graph.get(name)
            deps = ", ".join(desc.depends_on) or "-"
            flag = "" if desc.required else "  [optional]"
            click.echo(f"  {name:20s} {desc.kind.value:6s} 依赖: {deps}{flag}")
    click.echo(f"共 {len(graph)} 个服务，{len(graph.layers)} 层，最大并行度 "
               f"{max((len(layer) for layer in graph.layers), default=0)}")


@click.command()
@click.pass_context
def cache(ctx: click.Context) -> None:
    """查看各构建类型的共享缓存目录"""
    try:
        cfg = _load_config(ctx)
    except ConfigurationError as e:
        echo_config_error(e)
        ctx.exit(EXIT_CONFIG_ERROR)
    coordinator = CacheCoordinator(cfg.cache_dir)
    click.echo(f"缓存根目录: {coordinator.root}")
    entries = coordinator.entries()
    if not entries:
        click.echo("尚无缓存目录。")
        return
    for entry in entries:
        size_mb = entry.size_bytes / (1024 * 1024)
        click.echo(f"  {entry.key.kind.value:6s} {entry.key.namespace:10s} {size_mb:8.1f} MB  {entry.path}")
