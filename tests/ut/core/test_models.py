"""数据模型测试"""

from pathlib import Path

import pytest

from buildorch.core.models import (
    ArtifactRule,
    BuildKind,
    BuildStepResult,
    ErrorDetail,
    ErrorKind,
    Outcome,
    RunReport,
    ServiceDescriptor,
    SkipReason,
    Stage,
)


class TestArtifactRule:
    def test_match_sorted_files_only(self, tmp_path: Path) -> None:
        (tmp_path / "target").mkdir()
        (tmp_path / "target" / "b.jar").write_text("b")
        (tmp_path / "target" / "a.jar").write_text("a")
        (tmp_path / "target" / "dir.jar").mkdir()

        matches = ArtifactRule("target/*.jar").match(tmp_path)
        assert [p.name for p in matches] == ["a.jar", "b.jar"]

    def test_describe(self) -> None:
        assert "恰好 1 个" in ArtifactRule("dist/*.js").describe()
        assert "至少 1 个" in ArtifactRule("dist/*.js", count=None).describe()


class TestServiceDescriptor:
    def test_env_vars(self) -> None:
        desc = ServiceDescriptor(
            name="orders", kind=BuildKind.MAVEN, workdir=Path("orders"),
            env=(("A", "1"), ("B", "2")),
        )
        assert desc.env_vars == {"A": "1", "B": "2"}
        assert desc.required is True
        assert desc.run_tests is True

    def test_frozen(self) -> None:
        desc = ServiceDescriptor(name="cart", kind=BuildKind.GO, workdir=Path("cart"))
        with pytest.raises(AttributeError):
            desc.name = "other"  # type: ignore[misc]


class TestBuildStepResult:
    def test_skipped_dependency_failed(self) -> None:
        r = BuildStepResult.skipped("ui", SkipReason.DEPENDENCY_FAILED, blocked_by="orders")
        assert r.outcome is Outcome.SKIPPED
        assert r.blocked_by == "orders"
        assert "orders" in r.notes[0]
        assert not r.succeeded

    def test_skipped_cancelled(self) -> None:
        r = BuildStepResult.skipped("ui", SkipReason.CANCELLED)
        assert r.skip_reason is SkipReason.CANCELLED
        assert "fail-fast" in r.notes[0]

    def test_to_dict(self) -> None:
        r = BuildStepResult(
            service="orders", stage=Stage.COMPILE, outcome=Outcome.FAILED,
            duration=1.23456,
            error=ErrorDetail(ErrorKind.STAGE_FAILURE, "compile 失败", exit_code=1),
        )
        d = r.to_dict()
        assert d["stage"] == "compile"
        assert d["outcome"] == "failed"
        assert d["duration"] == 1.235
        assert d["error"]["kind"] == "stage_failure"
        assert d["artifact_path"] == ""

    def test_artifact_path_is_first(self) -> None:
        r = BuildStepResult(
            service="catalog", stage=Stage.VERIFY, outcome=Outcome.SUCCESS,
            artifacts=("/w/a.jar", "/w/b.jar"),
        )
        assert r.artifact_path == "/w/a.jar"
        assert r.succeeded


class TestRunReport:
    def _ok(self, name: str) -> BuildStepResult:
        return BuildStepResult(service=name, stage=Stage.VERIFY, outcome=Outcome.SUCCESS)

    def test_record_and_sorted_results(self) -> None:
        report = RunReport(["b", "a"])
        report.record(self._ok("b"))
        report.record(self._ok("a"))

        assert report.services == ["a", "b"]
        assert [r.service for r in report.results] == ["a", "b"]
        assert "a" in report
        assert len(report) == 2
        assert report.get("missing") is None

    def test_duplicate_record_rejected(self) -> None:
        report = RunReport(["a"])
        report.record(self._ok("a"))
        with pytest.raises(ValueError, match="已写入"):
            report.record(self._ok("a"))

    def test_record_after_finalize_rejected(self) -> None:
        report = RunReport(["a"])
        report.finalize()
        assert report.finalized
        with pytest.raises(ValueError, match="finalize"):
            report.record(self._ok("a"))
        assert report.elapsed >= 0
