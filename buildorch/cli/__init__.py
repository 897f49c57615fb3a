"""buildorch 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
"""

import os
from typing import Any

import click

from buildorch import __version__
from buildorch.core.config import Config
from buildorch.utils.logger import setup_logging

DEFAULT_CONFIG = "configs/buildorch.yml"


def _load_config(ctx: click.Context, **overrides: Any) -> Config:
    """读取 --config 指定的配置并应用命令行覆盖"""
    path = ctx.obj.get("config_path", DEFAULT_CONFIG) if ctx.obj else DEFAULT_CONFIG
    return Config.from_file(path).with_overrides(**overrides)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", default=DEFAULT_CONFIG, help="配置文件路径")
@click.pass_context
def main(ctx: click.Context, config_path: str) -> None:
    """buildorch - 多语言服务构建编排"""
    setup_logging(
        level=os.getenv("BUILDORCH_LOG_LEVEL", "INFO"),
        json_output=os.getenv("BUILDORCH_LOG_JSON", "") == "1",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# 注册各领域子命令
from buildorch.cli.cmd_run import register as _reg_run  # noqa: E402
from buildorch.cli.cmd_plan import register as _reg_plan  # noqa: E402

_reg_run(main)
_reg_plan(main)
