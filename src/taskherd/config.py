from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex"]

CONFIG_FILENAME = "taskherd.toml"
STATE_DIRNAME = ".taskherd"
WORK_DIRNAME = "work"


@dataclass(slots=True)
class ProjectConfig:
    source_repo_url: str = ""
    design_dir: str = "design"
    branch_prefix: str = "herd"


@dataclass(slots=True)
class AgentConfig:
    backend: BackendName = "claude"
    binary: str = ""
    model: str = ""
    auto_accept: bool = False
    plan_mode: bool = False
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class HerdConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    commands: dict[str, str] = field(default_factory=dict)

    @classmethod
    def default(cls) -> HerdConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> HerdConfig:
        commands = data.get("commands", {})
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            agent=AgentConfig(**data.get("agent", {})),
            commands={str(key): str(value) for key, value in commands.items()},
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "source_repo_url": self.project.source_repo_url,
                "design_dir": self.project.design_dir,
                "branch_prefix": self.project.branch_prefix,
            },
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "model": self.agent.model,
                "auto_accept": self.agent.auto_accept,
                "plan_mode": self.agent.plan_mode,
                "timeout_seconds": self.agent.timeout_seconds,
            },
            "commands": dict(sorted(self.commands.items())),
        }


@dataclass(slots=True)
class HerdPaths:
    """Filesystem locations derived from the base directory and config."""

    base_dir: Path
    design_dir: Path
    state_dir: Path
    work_dir: Path

    @classmethod
    def resolve(cls, base_dir: Path, config: HerdConfig) -> HerdPaths:
        base_dir = base_dir.resolve()
        design_dir = Path(config.project.design_dir).expanduser()
        if not design_dir.is_absolute():
            design_dir = base_dir / design_dir
        return cls(
            base_dir=base_dir,
            design_dir=design_dir,
            state_dir=base_dir / STATE_DIRNAME,
            work_dir=base_dir / WORK_DIRNAME,
        )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key and all(ch.isalnum() or ch in "-_" for ch in key):
        return key
    return json.dumps(key, ensure_ascii=False)


def dumps_toml(config: HerdConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "agent", "commands"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> HerdConfig:
    if not path.exists():
        return HerdConfig.default()
    return HerdConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: HerdConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
