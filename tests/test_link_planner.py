from __future__ import annotations

import json
from dataclasses import replace

import pytest

from orchestrator.errors import MissingObjectError, ToolInvocationError, UsageError
from orchestrator.link_planner import (
    RUNTIME_AUTO,
    RUNTIME_EXPLICIT,
    LinkOptions,
    LinkPlanner,
    discover_runtime_objects,
)
from orchestrator.stage_runner import StageRunner
from orchestrator.task import SourceUnit

LOADER = "/lib64/ld-linux-x86-64.so.2"


@pytest.fixture
def objects(toolchain, build_dir, write_source):
    runner = StageRunner(toolchain, build_dir)
    units = []
    for name in ("main.c", "util.c"):
        unit = SourceUnit(source=write_source(name))
        assert runner.run(unit, "to-object").ok
        units.append(unit)
    return units


def _explicit(runtime_dir, **changes) -> LinkOptions:
    options = LinkOptions(
        dynamic_linker=LOADER,
        runtime=RUNTIME_EXPLICIT,
        start_objects=tuple(str(runtime_dir / name) for name in ("crt1.o", "crti.o", "crtbegin.o")),
        end_objects=tuple(str(runtime_dir / name) for name in ("crtend.o", "crtn.o")),
        libraries=("-lc",),
    )
    return replace(options, **changes)


def test_plan_orders_start_units_libraries_end(toolchain, build_dir, objects, runtime_dir):
    planner = LinkPlanner(toolchain, build_dir)
    plan = planner.plan(objects, "app", _explicit(runtime_dir))

    assert plan.output == build_dir / "app"
    names = [path.name for path in plan.objects]
    assert names == ["crt1.o", "crti.o", "crtbegin.o", "main.o", "util.o", "crtend.o", "crtn.o"]

    args = list(plan.arguments())
    assert args[:2] == ["-dynamic-linker", LOADER]
    assert args.index(str(build_dir / "util.o")) < args.index("-lc") < args.index(str(runtime_dir / "crtend.o"))


def test_explicit_link_runs_raw_linker(toolchain, build_dir, objects, runtime_dir):
    planner = LinkPlanner(toolchain, build_dir)
    plan = planner.plan(objects, "app", _explicit(runtime_dir))

    result = planner.execute(plan)

    assert result.ok, result.stderr
    assert result.stage == "link"
    recorded = json.loads(plan.output.read_text())
    assert recorded["mode"] == "ld"
    assert recorded["flags"][:2] == ["-dynamic-linker", LOADER]
    assert [obj.rsplit("/", 1)[-1] for obj in recorded["objects"]] == [
        "crt1.o",
        "crti.o",
        "crtbegin.o",
        "main.o",
        "util.o",
        "crtend.o",
        "crtn.o",
    ]


def test_auto_runtime_uses_driver_and_ignores_lists(toolchain, build_dir, objects, runtime_dir):
    planner = LinkPlanner(toolchain, build_dir)
    options = _explicit(runtime_dir, runtime=RUNTIME_AUTO)

    plan = planner.plan(objects, "app", options)
    result = planner.execute(plan)

    assert plan.start_objects == () and plan.end_objects == ()
    assert result.ok, result.stderr
    assert result.command[: len(toolchain.driver)] == toolchain.driver
    recorded = json.loads(plan.output.read_text())
    assert recorded["mode"] == "driver"
    assert f"-Wl,-dynamic-linker,{LOADER}" in recorded["flags"]


def test_static_link_never_passes_dynamic_linker(toolchain, build_dir, objects):
    planner = LinkPlanner(toolchain, build_dir)
    plan = planner.plan(objects, "app", LinkOptions(static=True, dynamic_linker=LOADER))

    args = plan.arguments()
    assert "-static" in args
    assert not any("dynamic-linker" in arg for arg in args)
    assert planner.execute(plan).ok


def test_dynamic_without_loader_is_usage_error(toolchain, build_dir, objects):
    with pytest.raises(UsageError):
        LinkPlanner(toolchain, build_dir).plan(objects, "app", LinkOptions(dynamic_linker=None))


def test_explicit_without_start_objects_is_usage_error(toolchain, build_dir, objects, runtime_dir):
    options = _explicit(runtime_dir, start_objects=())
    with pytest.raises(UsageError):
        LinkPlanner(toolchain, build_dir).plan(objects, "app", options)


def test_unknown_runtime_mode_is_usage_error(toolchain, build_dir, objects):
    options = LinkOptions(dynamic_linker=LOADER, runtime="guess")
    with pytest.raises(UsageError):
        LinkPlanner(toolchain, build_dir).plan(objects, "app", options)


@pytest.mark.parametrize(
    "options, output",
    [
        (LinkOptions(dynamic_linker=LOADER), ""),
        (LinkOptions(dynamic_linker=None), "app"),
        (LinkOptions(dynamic_linker=LOADER, runtime="guess"), "app"),
        (LinkOptions(dynamic_linker=LOADER, runtime=RUNTIME_EXPLICIT), "app"),
    ],
)
def test_validate_rejects_unusable_requests_without_units(toolchain, build_dir, options, output):
    with pytest.raises(UsageError):
        LinkPlanner(toolchain, build_dir).validate(options, output)


def test_validate_accepts_well_formed_requests(toolchain, build_dir, runtime_dir):
    planner = LinkPlanner(toolchain, build_dir)
    planner.validate(LinkOptions(static=True), "app")
    planner.validate(LinkOptions(dynamic_linker=LOADER), "app")
    planner.validate(_explicit(runtime_dir), "app")


def test_missing_objects_are_reported_by_name(toolchain, build_dir, objects, write_source):
    pending = SourceUnit(source=write_source("late.c"))
    with pytest.raises(MissingObjectError) as excinfo:
        LinkPlanner(toolchain, build_dir).plan(objects + [pending], "app", LinkOptions(dynamic_linker=LOADER))
    assert excinfo.value.units == ("late",)


def test_out_of_order_runtime_fails_with_linker_text(toolchain, build_dir, objects, runtime_dir):
    planner = LinkPlanner(toolchain, build_dir)
    plan = planner.plan(objects, "app", _explicit(runtime_dir))
    shuffled = replace(plan, start_objects=plan.end_objects, end_objects=plan.start_objects)

    result = planner.execute(shuffled)

    assert result.ok is False
    assert result.exit_status == 1
    assert "undefined reference" in result.stderr


def test_unresolved_symbol_surfaces_verbatim(toolchain, build_dir, write_source):
    runner = StageRunner(toolchain, build_dir)
    unit = SourceUnit(source=write_source("broken.c", "FAIL:link\n"))
    assert runner.run(unit, "to-object").ok
    planner = LinkPlanner(toolchain, build_dir)

    result = planner.execute(planner.plan([unit], "app", LinkOptions(dynamic_linker=LOADER)))

    assert not result.ok
    assert "undefined reference to `missing_symbol'" in result.stderr


def test_stale_executable_is_removed_before_linking(toolchain, build_dir, write_source):
    runner = StageRunner(toolchain, build_dir)
    unit = SourceUnit(source=write_source("broken.c", "FAIL:link\n"))
    assert runner.run(unit, "to-object").ok
    stale = build_dir / "app"
    stale.write_text("old build")
    planner = LinkPlanner(toolchain, build_dir)

    planner.execute(planner.plan([unit], "app", LinkOptions(dynamic_linker=LOADER)))

    assert stale.read_text() != "old build"


def test_output_with_directory_is_kept(toolchain, build_dir, objects, tmp_path):
    target = tmp_path / "dist" / "app"
    plan = LinkPlanner(toolchain, build_dir).plan(objects, str(target), LinkOptions(static=True))
    assert plan.output == target


def test_missing_linker_raises_invocation_error(toolchain, build_dir, objects):
    broken = replace(toolchain, driver=("sepcomp-no-such-driver",))
    planner = LinkPlanner(broken, build_dir)
    with pytest.raises(ToolInvocationError):
        planner.execute(planner.plan(objects, "app", LinkOptions(static=True)))


def test_discover_runtime_objects(toolchain, runtime_dir):
    start, end = discover_runtime_objects(toolchain, ["crt1.o", "crti.o"], ["crtn.o"])
    assert start == (str(runtime_dir / "crt1.o"), str(runtime_dir / "crti.o"))
    assert end == (str(runtime_dir / "crtn.o"),)


def test_discover_unknown_runtime_object_is_usage_error(toolchain, runtime_dir):
    with pytest.raises(UsageError):
        discover_runtime_objects(toolchain, ["crt-missing.o"], [])


def test_link_options_from_config_prefers_env_loader():
    config = {"link": {"runtime": "explicit", "dynamic_linker": "/cfg/ld.so", "start_objects": ["a.o"]}}
    options = LinkOptions.from_config(config, {"SEPCOMP_DYNAMIC_LINKER": "/env/ld.so"})
    assert options.dynamic_linker == "/env/ld.so"
    assert options.runtime == RUNTIME_EXPLICIT
    assert options.start_objects == ("a.o",)
