"""Configuration file loading and merging for tern.

Reads TOML config from ~/.config/tern/config.toml (global) and
<base_dir>/tern.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any, NamedTuple

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


class Setting(NamedTuple):
    kind: type | tuple[type, ...]
    default: Any = None
    minimum: int | None = None
    choices: tuple[str, ...] = ()


SETTINGS: dict[str, Setting] = {
    "model": Setting(str, "anthropic/claude-3.5-sonnet"),
    "api_key": Setting(str),
    "base_url": Setting(str),
    "max_output_tokens": Setting(int, 4000, minimum=1),
    "temperature": Setting((int, float), 0.7),
    "max_context_tokens": Setting(int, minimum=1),
    "reserved_tokens": Setting(int, 2000, minimum=0),
    "summary_tokens": Setting(int, 500, minimum=0),
    "recent_messages": Setting(int, 10, minimum=1),
    "token_estimator": Setting(str, "chars", choices=("chars", "tiktoken")),
    "chars_per_token": Setting(int, 4, minimum=1),
    "max_turns": Setting(int, 25, minimum=1),
    "system_prompt": Setting(str),
    "session_file": Setting(str),
    "no_session": Setting(bool, False),
    "color": Setting(bool, False),
    "quiet": Setting(bool, False),
}


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "tern"


def _check_value(key: str, value: Any, source: str) -> None:
    setting = SETTINGS[key]
    kinds = setting.kind if isinstance(setting.kind, tuple) else (setting.kind,)
    # TOML booleans are ints to isinstance; only bool settings accept them.
    got = type(value)
    if (got is bool and bool not in kinds) or not isinstance(value, kinds):
        wanted = " or ".join(k.__name__ for k in kinds)
        raise ConfigError(f"{source}: {key!r} expected {wanted}, got {got.__name__}")

    if setting.minimum == 1 and value < 1:
        raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")
    if setting.minimum == 0 and value < 0:
        raise ConfigError(f"{source}: {key!r} must not be negative, got {value}")
    if setting.choices and value not in setting.choices:
        raise ConfigError(
            f"{source}: {key!r} must be one of {', '.join(setting.choices)}, got {value!r}"
        )


def _read(path: Path) -> dict:
    """Parse and validate one config file; unknown keys are dropped with a warning."""
    if not path.is_file():
        return {}
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"{path}: cannot read file: {e}") from e

    config = {}
    for key, value in raw.items():
        if key not in SETTINGS:
            print(f"warning: {path}: unknown config key {key!r}", file=sys.stderr)
            continue
        _check_value(key, value, str(path))
        config[key] = value

    if "session_file" in config:
        # expanduser first so "~/x" never becomes "<dir>/~/x"
        p = Path(config["session_file"]).expanduser()
        config["session_file"] = str(p if p.is_absolute() else path.parent / p)
    return config


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns only the keys actually set in config files, with no defaults.
    """
    merged = _read(global_config_dir() / "config.toml")

    project_path = Path(base_dir).resolve() / "tern.toml"
    project = _read(project_path)
    if "api_key" in project and any((d / ".git").exists() for d in project_path.parents):
        print(
            f"warning: {project_path}: 'api_key' in a git-tracked project config "
            f"may be committed accidentally. Consider using OPENROUTER_API_KEY.",
            file=sys.stderr,
        )
    merged.update(project)
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill every attribute the CLI left as _UNSET, from config then defaults.

    Settings without a CLI flag are absent from the namespace and count as
    unset. The single ``color`` setting drives the --color/--no-color pair.
    """
    values = {key: s.default for key, s in SETTINGS.items()}
    values.update(config)
    values["no_color"] = "color" in config and not config["color"]

    cli_chose_color = getattr(args, "color", _UNSET) is not _UNSET or (
        getattr(args, "no_color", _UNSET) is not _UNSET
    )
    if cli_chose_color:
        values["color"] = values["no_color"] = False

    for dest, value in values.items():
        if getattr(args, dest, _UNSET) is _UNSET:
            setattr(args, dest, value)


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# tern configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/tern.toml' if project else '~/.config/tern/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        '# model = "anthropic/claude-3.5-sonnet"',
        '# api_key = "sk-or-..."            # prefer OPENROUTER_API_KEY; this is a fallback',
        '# base_url = "https://openrouter.ai/api/v1"',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 4000",
        "# temperature = 0.7",
        "# max_turns = 25                   # tool rounds per message",
        '# system_prompt = "You are a helpful assistant."',
        "",
        "# --- Context window ---",
        "# max_context_tokens = 32000       # default: derived from the model",
        "# reserved_tokens = 2000           # system prompt + tool schemas",
        "# summary_tokens = 500",
        "# recent_messages = 10             # never summarized",
        '# token_estimator = "chars"        # "chars" | "tiktoken"',
        "# chars_per_token = 4",
        "",
        "# --- Session ---",
        '# session_file = "~/.tern_session.json"',
        "# no_session = false",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
