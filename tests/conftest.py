from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Callable

import pytest

from orchestrator import log as build_log
from project_config import BuildSettings, ToolchainConfig

# Stand-in toolchain: every mode reads its input, refuses it when the input
# carries a FAIL:<stage> marker and otherwise writes a tagged copy.
FAKE_TOOL = r'''
import json
import os
import sys
import time

STAGES = {"cpp": "preprocess", "cc": "to-assembly", "as": "assemble", "cc-c": "to-object"}
PREFIX = {"cpp": "# pp\n", "cc": "\t.asm\n", "as": "OBJ\n", "cc-c": "OBJ\n"}


def log_invocation(mode):
    path = os.environ.get("FAKE_TOOL_LOG")
    if path:
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(mode + "\n")


def fail(message):
    sys.stderr.write(message + "\n")
    sys.exit(1)


def compile_like(mode, args):
    out_index = args.index("-o")
    out = args[out_index + 1]
    src = args[out_index - 1]
    with open(src, encoding="utf-8") as fh:
        text = fh.read()
    stage = STAGES[mode]
    if "SLEEP" in text:
        time.sleep(10)
    if "FAIL:" + stage in text:
        fail(src + ":1: error: " + stage + " rejected this unit")
    if mode == "cc" and not text.startswith("# pp\n"):
        fail(src + ": input is not preprocessed")
    if mode == "as" and not text.startswith("\t.asm\n"):
        fail(src + ": input is not assembly")
    with open(out, "w", encoding="utf-8") as fh:
        fh.write(PREFIX[mode] + text)


def link(mode, args):
    out = None
    objects = []
    flags = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "-o":
            out = args[i + 1]
            i += 2
        elif arg == "-dynamic-linker":
            flags.extend(args[i:i + 2])
            i += 2
        elif arg.startswith("-"):
            flags.append(arg)
            i += 1
        else:
            objects.append(arg)
            i += 1

    with open(out, "w", encoding="utf-8") as fh:
        json.dump({"mode": mode, "flags": flags, "objects": objects}, fh)

    names = [os.path.basename(obj) for obj in objects]
    unit_positions = [pos for pos, name in enumerate(names) if not name.startswith("crt")]
    if mode == "ld":
        if "crt1.o" not in names:
            fail("ld: warning: cannot find entry symbol _start")
        for start in ("crt1.o", "crti.o"):
            if start in names and names.index(start) > unit_positions[0]:
                fail("ld: " + start + ": undefined reference to `_start'")
        if "crtn.o" in names and names.index("crtn.o") < unit_positions[-1]:
            fail("ld: crtn.o: undefined reference to `_fini'")
    for obj in objects:
        with open(obj, encoding="utf-8") as fh:
            if "FAIL:link" in fh.read():
                fail(obj + ": undefined reference to `missing_symbol'")


def main():
    mode = sys.argv[1]
    args = sys.argv[2:]
    log_invocation(mode)
    if mode == "driver":
        for arg in args:
            if arg.startswith("-print-file-name="):
                name = arg.split("=", 1)[1]
                root = os.environ.get("FAKE_RUNTIME_DIR", "")
                candidate = os.path.join(root, name)
                print(candidate if root and os.path.exists(candidate) else name)
                return
    if mode in ("ld", "driver"):
        link(mode, args)
    else:
        compile_like(mode, args)


main()
'''


@pytest.fixture(autouse=True)
def quiet_build_log(tmp_path):
    build_log.configure(tmp_path / "logs", enabled=False)
    yield
    build_log.configure(tmp_path / "logs", enabled=False)


@pytest.fixture
def fake_tool(tmp_path) -> Path:
    path = tmp_path / "fake_tool.py"
    path.write_text(FAKE_TOOL, encoding="utf-8")
    return path


def _tool(fake_tool: Path, mode: str) -> tuple:
    return (sys.executable, str(fake_tool), mode)


@pytest.fixture
def toolchain(fake_tool) -> ToolchainConfig:
    return ToolchainConfig(
        preprocessor=_tool(fake_tool, "cpp"),
        compiler=_tool(fake_tool, "cc"),
        assembler=_tool(fake_tool, "as"),
        object_compiler=_tool(fake_tool, "cc-c"),
        linker=_tool(fake_tool, "ld"),
        driver=_tool(fake_tool, "driver"),
    )


@pytest.fixture
def build_dir(tmp_path) -> Path:
    return tmp_path / "build"


@pytest.fixture
def settings(build_dir) -> BuildSettings:
    return BuildSettings(build_dir=build_dir, log_enabled=False)


@pytest.fixture
def write_source(tmp_path) -> Callable[..., Path]:
    src_dir = tmp_path / "src"
    src_dir.mkdir(exist_ok=True)

    def _write(name: str, body: str = "int value = 1;\n") -> Path:
        path = src_dir / name
        path.write_text(body, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def tool_log(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "invocations.log"
    monkeypatch.setenv("FAKE_TOOL_LOG", str(path))
    return path


@pytest.fixture
def runtime_dir(tmp_path, monkeypatch) -> Path:
    """Directory holding stand-in crt objects, visible to the fake driver."""

    root = tmp_path / "runtime"
    root.mkdir()
    for name in ("crt1.o", "crti.o", "crtbegin.o", "crtend.o", "crtn.o"):
        (root / name).write_text(f"runtime {name}\n", encoding="utf-8")
    monkeypatch.setenv("FAKE_RUNTIME_DIR", str(root))
    return root


def invocations(path: Path) -> list[str]:
    if not path.exists():
        return []
    return path.read_text(encoding="utf-8").split()


def toml_config(fake_tool: Path, **tables: str) -> str:
    """Render a sepcomp.toml pointing every tool at the fake toolchain."""

    def argv(mode: str) -> str:
        return json.dumps([sys.executable, str(fake_tool), mode])

    lines = [
        "[toolchain]",
        f"preprocessor = {argv('cpp')}",
        f"compiler = {argv('cc')}",
        f"assembler = {argv('as')}",
        f"object_compiler = {argv('cc-c')}",
        f"linker = {argv('ld')}",
        f"driver = {argv('driver')}",
    ]
    for name, body in tables.items():
        lines.append(f"[{name}]")
        lines.append(body)
    return "\n".join(lines) + "\n"
