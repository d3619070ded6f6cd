from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from spechub.models import ApplyExecutor, EnvironmentMode

DispatcherName = Literal["cli", "responses"]

DEFAULT_CONFIG_FILENAME = "spechub.toml"
DEFAULT_STATE_PATH = ".spechub/state.json"


@dataclass(slots=True)
class WorkspaceConfig:
    id: str = "default"
    root: str = "."
    spec_root: str = ""
    mode: EnvironmentMode | Literal[""] = ""
    max_file_bytes: int = 400_000


@dataclass(slots=True)
class CommandsConfig:
    action_timeout_seconds: float = 180.0
    probe_timeout_seconds: float = 60.0


@dataclass(slots=True)
class AgentsConfig:
    dispatcher: DispatcherName = "cli"
    executor: ApplyExecutor = "codex"
    model: str = ""
    codex_binary: str = "codex"
    claude_binary: str = "claude"
    opencode_binary: str = "opencode"
    turn_timeout_seconds: float = 900.0
    heartbeat_seconds: float = 1.0

    def binaries(self) -> dict[str, str]:
        return {
            "codex": self.codex_binary,
            "claude": self.claude_binary,
            "opencode": self.opencode_binary,
        }


@dataclass(slots=True)
class SessionConfig:
    refresh_debounce_seconds: float = 0.9
    timeline_limit: int = 80


@dataclass(slots=True)
class StateConfig:
    path: str = DEFAULT_STATE_PATH


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"


@dataclass(slots=True)
class HubConfig:
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    commands: CommandsConfig = field(default_factory=CommandsConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> HubConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> HubConfig:
        return cls(
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            commands=CommandsConfig(**data.get("commands", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            session=SessionConfig(**data.get("session", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "workspace": {
                "id": self.workspace.id,
                "root": self.workspace.root,
                "spec_root": self.workspace.spec_root,
                "mode": self.workspace.mode,
                "max_file_bytes": self.workspace.max_file_bytes,
            },
            "commands": {
                "action_timeout_seconds": self.commands.action_timeout_seconds,
                "probe_timeout_seconds": self.commands.probe_timeout_seconds,
            },
            "agents": {
                "dispatcher": self.agents.dispatcher,
                "executor": self.agents.executor,
                "model": self.agents.model,
                "codex_binary": self.agents.codex_binary,
                "claude_binary": self.agents.claude_binary,
                "opencode_binary": self.agents.opencode_binary,
                "turn_timeout_seconds": self.agents.turn_timeout_seconds,
                "heartbeat_seconds": self.agents.heartbeat_seconds,
            },
            "session": {
                "refresh_debounce_seconds": self.session.refresh_debounce_seconds,
                "timeline_limit": self.session.timeline_limit,
            },
            "state": {
                "path": self.state.path,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def workspace_root(self, base: Path) -> Path:
        """Resolve the configured workspace root relative to ``base``."""
        root = Path(self.workspace.root).expanduser()
        return root if root.is_absolute() else (base / root).resolve()

    def state_path(self, base: Path) -> Path:
        path = Path(self.state.path).expanduser()
        return path if path.is_absolute() else base / path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: HubConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("workspace", "commands", "agents", "session", "state", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> HubConfig:
    if not path.exists():
        return HubConfig.default()
    return HubConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: HubConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
