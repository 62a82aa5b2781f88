"""Utility helpers for loading sepcomp configuration.

Settings are layered, lowest precedence first: built-in defaults, the TOML
file, the ``by_profile.<profile>`` block of each table, environment
variables and finally command line overrides (applied by the caller with
:func:`dataclasses.replace`).  The resolved values are frozen dataclasses
that callers pass explicitly into the stage runner, link planner and
orchestrator.
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

try:  # Python 3.11+
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - fallback for older Python
    import tomli as tomllib  # type: ignore[import-untyped]

from contracts import ContractError, assert_valid
from orchestrator.errors import ConfigError

_CONFIG_FILENAME = "sepcomp.toml"
_DEFAULT_PROFILE = "dev"

DEFAULTS: Dict[str, Any] = {
    "toolchain": {
        "preprocessor": ["gcc", "-E"],
        "compiler": ["gcc", "-S"],
        "assembler": ["as"],
        "object_compiler": ["gcc", "-c"],
        "linker": ["ld"],
        "driver": ["gcc"],
        "timeout_s": 0,
        "flags": {},
    },
    "link": {
        "runtime": "auto",
        "static": False,
        "dynamic_linker": "/lib64/ld-linux-x86-64.so.2",
        "start_objects": [],
        "end_objects": [],
        "libraries": [],
        "flags": [],
        "runtime_object_names": {
            "start": ["crt1.o", "crti.o", "crtbegin.o"],
            "end": ["crtend.o", "crtn.o"],
        },
    },
    "build": {
        "build_dir": "build",
        "route": "staged",
        "jobs": 1,
        "fail_fast": False,
        "output": "a.out",
    },
    "log": {
        "enabled": True,
        "dir": "logs/build",
        "max_bytes": 100 * 1024 * 1024,
    },
    "mirror": {
        "page": "https://earthly.dev/blog/cmake-vs-make-diff/",
        "folder": "./wgetfiles",
        "depth": 2,
        "accept": ["html", "css", "jpeg", "jpg", "bmp", "gif", "png", "pdf"],
        "wget": ["wget"],
    },
}


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalised = value.strip().lower()
        if normalised in {"1", "true", "yes", "on"}:
            return True
        if normalised in {"0", "false", "no", "off"}:
            return False
    return None


def _deep_merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def find_config_path(explicit: str | Path | None = None, env: Mapping[str, str] | None = None) -> Optional[Path]:
    """Locate the configuration file: explicit path, ``SEPCOMP_CONFIG``, then ``./sepcomp.toml``."""

    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigError(f"configuration file '{path}' does not exist")
        return path

    env_map = os.environ if env is None else env
    from_env = env_map.get("SEPCOMP_CONFIG")
    if from_env:
        path = Path(from_env)
        if not path.is_file():
            raise ConfigError(f"SEPCOMP_CONFIG points at missing file '{path}'")
        return path

    candidate = Path.cwd() / _CONFIG_FILENAME
    return candidate if candidate.is_file() else None


@lru_cache(maxsize=8)
def _read_toml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from exc


def reload() -> None:
    """Clear the cached configuration files."""

    _read_toml.cache_clear()


def _apply_profile(config: Dict[str, Any], profile: str) -> Dict[str, Any]:
    resolved: Dict[str, Any] = {}
    for table, body in config.items():
        if not isinstance(body, dict):
            resolved[table] = body
            continue
        section = {key: value for key, value in body.items() if key != "by_profile"}
        by_profile = body.get("by_profile")
        if isinstance(by_profile, dict):
            block = by_profile.get(profile.lower())
            if isinstance(block, dict):
                section = _deep_merge(section, block)
        resolved[table] = section
    return resolved


def resolve_profile(env: Mapping[str, str] | None = None, cli_override: str | None = None) -> str:
    if cli_override:
        return cli_override
    env_map = os.environ if env is None else env
    return env_map.get("SEPCOMP_PROFILE") or _DEFAULT_PROFILE


def load_config(
    path: str | Path | None = None,
    *,
    profile: str | None = None,
    env: Mapping[str, str] | None = None,
) -> Dict[str, Any]:
    """Return the merged and validated configuration dictionary."""

    config_path = find_config_path(path, env)
    raw: Dict[str, Any] = _read_toml(str(config_path)) if config_path is not None else {}
    merged = _apply_profile(_deep_merge(DEFAULTS, raw), resolve_profile(env, profile))
    try:
        assert_valid(merged, "config")
    except ContractError as exc:
        source = str(config_path) if config_path is not None else "defaults"
        raise ConfigError(f"{source}: {exc}") from exc
    return merged


def get_section(config: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Retrieve a nested configuration value using dotted notation."""

    data: Any = config
    for part in path.split("."):
        if isinstance(data, Mapping) and part in data:
            data = data[part]
        else:
            if default is not None:
                return default
            raise KeyError(f"Configuration path '{path}' not found")
    return data


@dataclass(frozen=True)
class ToolchainConfig:
    """Argument prefixes of the external tools, one per stage."""

    preprocessor: Tuple[str, ...]
    compiler: Tuple[str, ...]
    assembler: Tuple[str, ...]
    object_compiler: Tuple[str, ...]
    linker: Tuple[str, ...]
    driver: Tuple[str, ...]
    flags: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    timeout_s: Optional[float] = None

    _STAGE_TOOLS = {
        "preprocess": "preprocessor",
        "to-assembly": "compiler",
        "assemble": "assembler",
        "to-object": "object_compiler",
        "link": "linker",
    }

    def tool_for(self, stage: str) -> Tuple[str, ...]:
        try:
            return getattr(self, self._STAGE_TOOLS[stage])
        except KeyError:
            raise ValueError(f"No tool is configured for stage '{stage}'") from None

    def flags_for(self, stage: str) -> Tuple[str, ...]:
        return tuple(self.flags.get(stage, ()))

    @classmethod
    def from_mapping(cls, section: Mapping[str, Any]) -> "ToolchainConfig":
        timeout = section.get("timeout_s") or None
        return cls(
            preprocessor=tuple(section["preprocessor"]),
            compiler=tuple(section["compiler"]),
            assembler=tuple(section["assembler"]),
            object_compiler=tuple(section["object_compiler"]),
            linker=tuple(section["linker"]),
            driver=tuple(section["driver"]),
            flags={str(k): tuple(v) for k, v in dict(section.get("flags", {})).items()},
            timeout_s=float(timeout) if timeout is not None else None,
        )


@dataclass(frozen=True)
class BuildSettings:
    build_dir: Path = Path("build")
    route: str = "staged"
    jobs: int = 1
    fail_fast: bool = False
    output: str = "a.out"
    profile: str = _DEFAULT_PROFILE
    log_enabled: bool = True
    log_dir: Path = Path("logs/build")
    log_max_bytes: int = 100 * 1024 * 1024


@dataclass(frozen=True)
class MirrorSettings:
    page: str
    folder: Path
    depth: int
    accept: Tuple[str, ...]
    wget: Tuple[str, ...] = ("wget",)


def _env_int(env: Mapping[str, str], key: str) -> Optional[int]:
    raw = env.get(key)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def toolchain_from_config(config: Mapping[str, Any], env: Mapping[str, str] | None = None) -> ToolchainConfig:
    env_map = os.environ if env is None else env
    section = dict(get_section(config, "toolchain"))
    raw_timeout = env_map.get("SEPCOMP_TIMEOUT_S")
    if raw_timeout:
        try:
            section["timeout_s"] = float(raw_timeout)
        except ValueError:
            raise ConfigError(f"SEPCOMP_TIMEOUT_S must be a number, got {raw_timeout!r}") from None
    return ToolchainConfig.from_mapping(section)


def build_settings_from_config(
    config: Mapping[str, Any],
    env: Mapping[str, str] | None = None,
    *,
    profile: str | None = None,
) -> BuildSettings:
    env_map = os.environ if env is None else env
    build = get_section(config, "build")
    log = get_section(config, "log")

    build_dir = env_map.get("SEPCOMP_BUILD_DIR") or build["build_dir"]
    jobs = _env_int(env_map, "SEPCOMP_JOBS")
    fail_fast = _coerce_bool(env_map.get("SEPCOMP_FAIL_FAST"))

    settings = BuildSettings(
        build_dir=Path(build_dir),
        route=str(build["route"]),
        jobs=jobs if jobs is not None else int(build["jobs"]),
        fail_fast=fail_fast if fail_fast is not None else bool(build["fail_fast"]),
        output=str(build["output"]),
        profile=resolve_profile(env_map, profile),
        log_enabled=bool(log["enabled"]),
        log_dir=Path(log["dir"]),
        log_max_bytes=int(log["max_bytes"]),
    )
    if settings.jobs < 1:
        raise ConfigError("jobs must be at least 1")
    return settings


def mirror_settings_from_config(config: Mapping[str, Any]) -> MirrorSettings:
    mirror = get_section(config, "mirror")
    return MirrorSettings(
        page=str(mirror["page"]),
        folder=Path(mirror["folder"]),
        depth=int(mirror["depth"]),
        accept=tuple(mirror["accept"]),
        wget=tuple(mirror["wget"]),
    )


__all__ = [
    "DEFAULTS",
    "BuildSettings",
    "MirrorSettings",
    "ToolchainConfig",
    "build_settings_from_config",
    "find_config_path",
    "get_section",
    "load_config",
    "mirror_settings_from_config",
    "reload",
    "resolve_profile",
    "toolchain_from_config",
]
