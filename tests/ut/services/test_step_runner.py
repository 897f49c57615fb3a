"""构建执行器测试 - 阶段顺序、失败短路、网络重试、超时、产物校验"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Callable

from buildorch.core.models import (
    ArtifactRule,
    BuildKind,
    ErrorKind,
    Outcome,
    ServiceDescriptor,
    Stage,
)
from buildorch.services.build.cache import CacheCoordinator
from buildorch.services.build.executor import BuildStepRunner
from buildorch.utils.shell import CommandResult

MakeService = Callable[..., ServiceDescriptor]


def _fail(rc: int = 1, output: str = "boom") -> CommandResult:
    return CommandResult(rc, "", output, "fake")


class TestStageOrder:
    def test_success_runs_all_stages(
        self, step_runner: BuildStepRunner, executor: Any, make_service: MakeService,
    ) -> None:
        desc = make_service("catalog")
        result = step_runner.run(desc)

        assert result.outcome is Outcome.SUCCESS
        assert result.stage is Stage.VERIFY
        assert executor.stages("catalog") == ["setup", "compile", "test"]
        assert [s.stage for s in result.stages] == list(Stage)
        assert result.artifact_path == str(desc.workdir / "out" / "catalog.jar")
        assert result.error is None

    def test_compile_failure_stops_later_stages(
        self, step_runner: BuildStepRunner, executor: Any, make_service: MakeService,
    ) -> None:
        executor.responses[("orders", "compile")] = _fail(1, "[ERROR] cannot find symbol")
        result = step_runner.run(make_service("orders"))

        assert result.outcome is Outcome.FAILED
        assert result.stage is Stage.COMPILE
        assert result.error.kind is ErrorKind.STAGE_FAILURE
        assert result.error.exit_code == 1
        assert "cannot find symbol" in result.error.output_tail
        assert executor.stages("orders") == ["setup", "compile"]
        assert result.artifacts == ()

    def test_test_failure_is_not_retried(
        self, step_runner: BuildStepRunner, executor: Any, make_service: MakeService,
        sleeps: list[float],
    ) -> None:
        executor.responses[("cart", "test")] = _fail(2, "Connection reset")
        result = step_runner.run(make_service("cart", kind=BuildKind.GO))

        assert result.stage is Stage.TEST
        assert result.error.kind is ErrorKind.STAGE_FAILURE
        assert executor.stages("cart") == ["setup", "compile", "test"]
        assert sleeps == []

    def test_missing_workdir(self, step_runner: BuildStepRunner, executor: Any) -> None:
        desc = ServiceDescriptor(name="ghost", kind=BuildKind.GO, workdir=Path("/nonexistent/ghost"))
        result = step_runner.run(desc)
        assert result.outcome is Outcome.FAILED
        assert result.stage is Stage.SETUP
        assert "工作目录不存在" in result.error.message
        assert executor.calls == []


class TestSetupRetry:
    def test_transient_then_success(
        self, step_runner: BuildStepRunner, executor: Any, make_service: MakeService,
        sleeps: list[float],
    ) -> None:
        executor.responses[("catalog", "setup")] = [
            _fail(1, "Connection reset"), _fail(1, "Connection reset"), CommandResult(0, "ok"),
        ]
        result = step_runner.run(make_service("catalog"))

        assert result.succeeded
        assert executor.stages("catalog") == ["setup", "setup", "setup", "compile", "test"]
        assert sleeps == [1.0, 2.0]
        assert result.stages[0].attempts == 3

    def test_retries_exhausted(
        self, step_runner: BuildStepRunner, executor: Any, make_service: MakeService,
        sleeps: list[float],
    ) -> None:
        executor.responses[("catalog", "setup")] = _fail(1, "Connection reset")
        result = step_runner.run(make_service("catalog"))

        assert result.outcome is Outcome.FAILED
        assert result.stage is Stage.SETUP
        assert result.error.kind is ErrorKind.TRANSIENT
        assert "已重试 2 次" in result.error.message
        assert executor.stages("catalog") == ["setup"] * 3
        assert sleeps == [1.0, 2.0]

    def test_backoff_capped(
        self, cache: CacheCoordinator, fake_adapters: Any, executor: Any,
        make_service: MakeService,
    ) -> None:
        delays: list[float] = []
        runner = BuildStepRunner(
            cache, fake_adapters, max_retries=4, retry_backoff=1.0,
            retry_max_delay=3.0, sleep=delays.append,
        )
        executor.responses[("catalog", "setup")] = _fail(1, "Connection reset")
        runner.run(make_service("catalog"))
        assert delays == [1.0, 2.0, 3.0, 3.0]

    def test_non_network_setup_failure_not_retried(
        self, step_runner: BuildStepRunner, executor: Any, make_service: MakeService,
        sleeps: list[float],
    ) -> None:
        executor.responses[("catalog", "setup")] = _fail(1, "Non-resolvable parent POM")
        result = step_runner.run(make_service("catalog"))

        assert result.error.kind is ErrorKind.STAGE_FAILURE
        assert executor.stages("catalog") == ["setup"]
        assert sleeps == []


class TestTimeoutsAndTools:
    def test_stage_timeout(
        self, cache: CacheCoordinator, fake_adapters: Any, executor: Any,
        make_service: MakeService,
    ) -> None:
        runner = BuildStepRunner(
            cache, fake_adapters, stage_timeouts={"compile": 5}, default_timeout=100,
        )
        executor.responses[("orders", "compile")] = subprocess.TimeoutExpired(
            cmd="fake compile", timeout=5, output=b"compiling...\n",
        )
        result = runner.run(make_service("orders"))

        assert result.stage is Stage.COMPILE
        assert result.error.kind is ErrorKind.TIMEOUT
        assert "超时 (5 秒)" in result.error.message
        assert "compiling..." in result.error.output_tail
        timeouts = {c.stage: c.timeout for c in executor.calls}
        assert timeouts == {"setup": 100, "compile": 5}

    def test_tool_missing(
        self, step_runner: BuildStepRunner, executor: Any, make_service: MakeService,
    ) -> None:
        executor.responses[("cart", "setup")] = FileNotFoundError(2, "No such file", "fake")
        result = step_runner.run(make_service("cart", kind=BuildKind.GO))

        assert result.stage is Stage.SETUP
        assert result.error.kind is ErrorKind.TOOL_MISSING
        assert "install fake" in result.error.message


class TestTests:
    def test_no_tests_configured(
        self, step_runner: BuildStepRunner, executor: Any, make_service: MakeService,
    ) -> None:
        result = step_runner.run(make_service("ui", kind=BuildKind.NODE, run_tests=False))

        assert result.succeeded
        assert "test" not in executor.stages("ui")
        assert any("未配置测试" in n for n in result.notes)
        assert result.stages[2].status == "skipped"

    def test_advisory_test_failure(
        self, step_runner: BuildStepRunner, executor: Any, make_service: MakeService,
    ) -> None:
        executor.responses[("ui", "test")] = _fail(1, "1 failing")
        result = step_runner.run(make_service("ui", kind=BuildKind.NODE, tests_advisory=True))

        assert result.succeeded
        assert result.stages[2].status == "advisory"
        assert any("仅供参考" in n for n in result.notes)


class TestVerify:
    def test_missing_artifact(
        self, step_runner: BuildStepRunner, make_service: MakeService,
    ) -> None:
        result = step_runner.run(make_service("catalog", with_artifact=False))

        assert result.outcome is Outcome.FAILED
        assert result.stage is Stage.VERIFY
        assert result.error.kind is ErrorKind.ARTIFACT_MISSING
        assert "产物校验失败" in result.error.message

    def test_empty_artifact_rejected(
        self, step_runner: BuildStepRunner, make_service: MakeService,
    ) -> None:
        desc = make_service("catalog", with_artifact=False)
        (desc.workdir / "out").mkdir()
        (desc.workdir / "out" / "catalog.jar").write_bytes(b"")
        result = step_runner.run(desc)
        assert result.error.kind is ErrorKind.ARTIFACT_MISSING

    def test_exact_count_mismatch(
        self, step_runner: BuildStepRunner, make_service: MakeService,
    ) -> None:
        desc = make_service("catalog")
        (desc.workdir / "out" / "extra.jar").write_bytes(b"PK")
        result = step_runner.run(desc)
        assert result.error.kind is ErrorKind.ARTIFACT_MISSING
        assert "找到 2 个匹配" in result.error.message

    def test_at_least_one(
        self, step_runner: BuildStepRunner, make_service: MakeService,
    ) -> None:
        desc = make_service("catalog", artifact=ArtifactRule("out/*.jar", count=None))
        (desc.workdir / "out" / "extra.jar").write_bytes(b"PK")
        result = step_runner.run(desc)
        assert result.succeeded
        assert len(result.artifacts) == 2

    def test_artifact_produced_by_compile(
        self, step_runner: BuildStepRunner, executor: Any, make_service: MakeService,
    ) -> None:
        def build(cwd: Path) -> CommandResult:
            (cwd / "bin").mkdir()
            (cwd / "bin" / "cart").write_bytes(b"\x7fELF")
            return CommandResult(0, "built")

        executor.responses[("cart", "compile")] = build
        desc = make_service(
            "cart", kind=BuildKind.GO, artifact=ArtifactRule("bin/cart"), with_artifact=False,
        )
        result = step_runner.run(desc)
        assert result.artifact_path == str(desc.workdir / "bin" / "cart")

    def test_no_artifact_rule(
        self, step_runner: BuildStepRunner, make_service: MakeService,
    ) -> None:
        result = step_runner.run(make_service("load-test", artifact=None, with_artifact=False))
        assert result.succeeded
        assert result.artifacts == ()
        assert any("未配置产物规则" in n for n in result.notes)


class TestEnvironmentAndLogs:
    def test_env_points_at_shared_cache(
        self, cache: CacheCoordinator, executor: Any, make_service: MakeService,
    ) -> None:
        runner = BuildStepRunner(cache, executor=executor)
        desc = make_service("orders", env=(("SPRING_PROFILES_ACTIVE", "test"),))
        runner.run(desc)

        env = executor.calls[0].env
        assert f"-Dmaven.repo.local={cache.path_for(BuildKind.MAVEN)}" in env["MAVEN_OPTS"]
        assert env["SPRING_PROFILES_ACTIVE"] == "test"
        assert cache.path_for(BuildKind.MAVEN).is_dir()

    def test_stage_logs_written_and_reset(
        self, cache: CacheCoordinator, fake_adapters: Any, executor: Any,
        make_service: MakeService, tmp_path: Path,
    ) -> None:
        runner = BuildStepRunner(
            cache, fake_adapters, log_dir=tmp_path / "logs", sleep=lambda _: None,
        )
        executor.responses[("catalog", "setup")] = [
            _fail(1, "Connection reset"), CommandResult(0, "resolved"),
        ]
        desc = make_service("catalog")
        runner.run(desc)

        setup_log = (tmp_path / "logs" / "catalog" / "setup.log").read_text(encoding="utf-8")
        assert "### attempt 1" in setup_log
        assert "### attempt 2" in setup_log
        assert (tmp_path / "logs" / "catalog" / "compile.log").exists()

        runner.run(desc)
        setup_log = (tmp_path / "logs" / "catalog" / "setup.log").read_text(encoding="utf-8")
        assert "### attempt 2" not in setup_log
