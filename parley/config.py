from __future__ import annotations

import copy
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

CONFIG_DIR = Path("~/.parley").expanduser()
CONFIG_FILE = CONFIG_DIR / "config.toml"
CREDENTIALS_FILE = CONFIG_DIR / "credentials.toml"

DEFAULTS: dict[str, Any] = {
    "providers": {
        "order": ["openai", "ollama"],
        "active": "",
    },
    "openai": {
        "model": "gpt-4o",
        "base_url": "",
    },
    "ollama": {
        "model": "qwen2.5:7b",
        "host": "http://localhost:11434",
    },
    "orchestrator": {
        "timeout": 60.0,
        "max_tool_depth": 3,
        "tool_concurrency": 4,
        "preserve_system": True,
        "reserve_tokens": 0,
        "system_prompt": "You are a helpful assistant.",
    },
    "storage": {
        "path": "~/.parley/conversations",
    },
    "logging": {
        "level": "WARNING",
        "file": "",
    },
}


class OrchestratorSettings(BaseModel):
    timeout: float = Field(default=60.0, gt=0)
    max_tool_depth: int = Field(default=3, ge=0)
    tool_concurrency: int = Field(default=4, ge=0)  # 0 = unbounded
    preserve_system: bool = True
    reserve_tokens: int = Field(default=0, ge=0)
    system_prompt: str = "You are a helpful assistant."


def load(path: Path | None = None) -> dict[str, Any]:
    """Load config from ~/.parley/config.toml, merging with defaults."""
    path = path or CONFIG_FILE
    config = copy.deepcopy(DEFAULTS)
    if path.exists():
        with open(path, "rb") as f:
            on_disk = tomllib.load(f)
        config = _deep_merge(config, on_disk)
    return config


def save(config: dict[str, Any], path: Path | None = None) -> None:
    """Save config dict to ~/.parley/config.toml (manual TOML serialization)."""
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_toml(config))


def orchestrator_settings(config: dict[str, Any]) -> OrchestratorSettings:
    return OrchestratorSettings.model_validate(config.get("orchestrator", {}))


def storage_path(config: dict[str, Any]) -> Path:
    return Path(config["storage"]["path"]).expanduser()


def provider_options(config: dict[str, Any], name: str) -> dict[str, Any]:
    """Connector keyword options from a provider table, without empty strings."""
    return {k: v for k, v in config.get(name, {}).items() if v != ""}


def dump_toml(d: dict[str, Any]) -> str:
    return "\n".join(_dict_to_toml(d)).lstrip("\n") + "\n"


def _deep_merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _dict_to_toml(d: dict[str, Any], prefix: str = "") -> list[str]:
    """Minimal TOML serializer for one level of tables with scalar or list values."""
    lines: list[str] = []
    sections: list[tuple[str, dict]] = []

    for k, v in d.items():
        if isinstance(v, dict):
            sections.append((k, v))
        else:
            lines.append(f'{k} = {_toml_value(v)}')

    for section_key, section_val in sections:
        header = f"[{section_key}]" if not prefix else f"[{prefix}.{section_key}]"
        lines.append("")
        lines.append(header)
        for sk, sv in section_val.items():
            lines.append(f'{sk} = {_toml_value(sv)}')

    return lines


def _toml_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, int):
        return str(v)
    if isinstance(v, float):
        return str(v)
    if isinstance(v, str):
        escaped = v.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        return f'"{escaped}"'
    if isinstance(v, (list, tuple)):
        return "[" + ", ".join(_toml_value(item) for item in v) + "]"
    raise ValueError(f"Unsupported TOML value type: {type(v)}")
