from __future__ import annotations

import sys
from dataclasses import replace

import pytest

from orchestrator.errors import ToolInvocationError, UsageError
from orchestrator.stage_runner import StageRunner
from orchestrator.task import (
    STATE_ASSEMBLY,
    STATE_DECLARED,
    STATE_OBJECT,
    STATE_PREPROCESSED,
    SourceUnit,
)
from project_config import ToolchainConfig


def test_staged_route_produces_every_artifact(toolchain, build_dir, write_source):
    unit = SourceUnit(source=write_source("main.c"))
    runner = StageRunner(toolchain, build_dir)

    for stage in ("preprocess", "to-assembly", "assemble"):
        result = runner.run(unit, stage)
        assert result.ok, result.stderr

    assert unit.state == STATE_OBJECT
    assert unit.history == [STATE_DECLARED, STATE_PREPROCESSED, STATE_ASSEMBLY, STATE_OBJECT]
    # intermediate files stay on disk for inspection
    assert (build_dir / "main.i").read_text().startswith("# pp\n")
    assert (build_dir / "main.s").read_text().startswith("\t.asm\n")
    assert (build_dir / "main.o").read_text().startswith("OBJ\n")


def test_command_shape_includes_stage_flags(toolchain, build_dir, write_source):
    source = write_source("flags.c")
    configured = replace(toolchain, flags={"preprocess": ("-DDEBUG", "-Iinclude")})
    runner = StageRunner(configured, build_dir)

    argv, output = runner.command_for(SourceUnit(source=source), "preprocess")

    assert argv == (
        *toolchain.preprocessor,
        "-DDEBUG",
        "-Iinclude",
        str(source),
        "-o",
        str(build_dir / "flags.i"),
    )
    assert output == build_dir / "flags.i"


def test_failure_keeps_prior_state_and_stderr(toolchain, build_dir, write_source):
    unit = SourceUnit(source=write_source("bad.c", "FAIL:to-assembly\n"))
    runner = StageRunner(toolchain, build_dir)

    assert runner.run(unit, "preprocess").ok
    result = runner.run(unit, "to-assembly")

    assert result.ok is False
    assert result.exit_status == 1
    assert result.artifact is None
    assert "to-assembly rejected this unit" in result.stderr
    assert unit.state == STATE_PREPROCESSED
    assert (build_dir / "bad.i").exists()


def test_direct_object_edge(toolchain, build_dir, write_source):
    unit = SourceUnit(source=write_source("direct.c"))
    result = StageRunner(toolchain, build_dir).run(unit, "to-object")
    assert result.ok
    assert unit.state == STATE_OBJECT
    assert unit.history == [STATE_DECLARED, STATE_OBJECT]


def test_stage_out_of_order_is_usage_error(toolchain, build_dir, write_source):
    unit = SourceUnit(source=write_source("main.c"))
    runner = StageRunner(toolchain, build_dir)
    with pytest.raises(UsageError):
        runner.run(unit, "assemble")
    with pytest.raises(UsageError):
        runner.run(unit, "link")


def test_missing_input_artifact_is_usage_error(toolchain, build_dir, write_source):
    unit = SourceUnit(source=write_source("main.c"))
    runner = StageRunner(toolchain, build_dir)
    assert runner.run(unit, "preprocess").ok
    (build_dir / "main.i").unlink()

    with pytest.raises(UsageError):
        runner.run(unit, "to-assembly")


def test_missing_tool_raises_invocation_error(toolchain, build_dir, write_source):
    broken = replace(toolchain, preprocessor=("sepcomp-no-such-preprocessor",))
    unit = SourceUnit(source=write_source("main.c"))

    with pytest.raises(ToolInvocationError):
        StageRunner(broken, build_dir).run(unit, "preprocess")
    assert unit.state == STATE_DECLARED


def test_timeout_is_recorded_as_failure(toolchain, build_dir, write_source):
    slow = replace(toolchain, timeout_s=0.5)
    unit = SourceUnit(source=write_source("slow.c", "SLEEP\n"))

    result = StageRunner(slow, build_dir).run(unit, "preprocess")

    assert result.timed_out is True
    assert result.exit_status is None
    assert result.ok is False
    assert "timed out" in result.stderr
    assert unit.state == STATE_DECLARED


def test_zero_exit_without_output_is_failure(build_dir, write_source):
    silent = (sys.executable, "-c", "import sys; sys.exit(0)")
    toolchain = ToolchainConfig(
        preprocessor=silent,
        compiler=silent,
        assembler=silent,
        object_compiler=silent,
        linker=silent,
        driver=silent,
    )
    unit = SourceUnit(source=write_source("quiet.c"))

    result = StageRunner(toolchain, build_dir).run(unit, "preprocess")

    assert result.exit_status == 0
    assert result.ok is False
    assert "did not write" in result.stderr
    assert unit.state == STATE_DECLARED


def test_stale_output_is_removed_before_the_tool_runs(build_dir, write_source):
    silent = (sys.executable, "-c", "import sys; sys.exit(0)")
    toolchain = ToolchainConfig(
        preprocessor=silent,
        compiler=silent,
        assembler=silent,
        object_compiler=silent,
        linker=silent,
        driver=silent,
    )
    build_dir.mkdir(parents=True)
    stale = build_dir / "quiet.i"
    stale.write_text("# left over from an earlier build\n", encoding="utf-8")
    unit = SourceUnit(source=write_source("quiet.c"))

    result = StageRunner(toolchain, build_dir).run(unit, "preprocess")

    assert result.ok is False
    assert "did not write" in result.stderr
    assert not stale.exists()
    assert unit.state == STATE_DECLARED
