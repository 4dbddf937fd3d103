"""Agent preset registry.

A preset describes how to launch one agent CLI (claude, gemini, codex, ...)
inside a session: the binary, its autonomous-mode flags, the process names
used to detect it, and how to resume a previous session.

The registry is a plain immutable value. Build it with
load_agent_registry() and pass it to the components that launch sessions.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

from gastown.errors import GastownError

CURRENT_REGISTRY_VERSION = 1

# Used when an agent name is unknown.
DEFAULT_PROCESS_NAMES = ("node",)


class AgentRegistryError(GastownError):
    """Raised when an agent registry file cannot be parsed."""


@dataclass(frozen=True)
class AgentPresetInfo:
    name: str
    command: str
    args: Tuple[str, ...] = ()
    process_names: Tuple[str, ...] = ()
    session_id_env: str = ""
    resume_flag: str = ""
    # "flag": <cmd> <args> <resume_flag> <id>
    # "subcommand": <cmd> <resume_flag> <id> <args>
    resume_style: str = ""

    def command_line(self) -> str:
        return " ".join([self.command, *self.args])

    @classmethod
    def from_dict(cls, name: str, data: Dict) -> "AgentPresetInfo":
        if not isinstance(data, dict):
            raise AgentRegistryError(f"agent '{name}' must be an object")
        command = data.get("command")
        if not command:
            raise AgentRegistryError(f"agent '{name}' has no command")
        return cls(
            name=data.get("name") or name,
            command=command,
            args=tuple(data.get("args") or ()),
            process_names=tuple(data.get("process_names") or (command,)),
            session_id_env=data.get("session_id_env", ""),
            resume_flag=data.get("resume_flag", ""),
            resume_style=data.get("resume_style", ""),
        )


BUILTIN_PRESETS: Tuple[AgentPresetInfo, ...] = (
    AgentPresetInfo(
        name="claude",
        command="claude",
        args=("--dangerously-skip-permissions",),
        process_names=("node",),
        session_id_env="CLAUDE_SESSION_ID",
        resume_flag="--resume",
        resume_style="flag",
    ),
    AgentPresetInfo(
        name="gemini",
        command="gemini",
        args=("--approval-mode", "yolo"),
        process_names=("gemini",),
        session_id_env="GEMINI_SESSION_ID",
        resume_flag="--resume",
        resume_style="flag",
    ),
    AgentPresetInfo(
        name="codex",
        command="codex",
        args=("--yolo",),
        process_names=("codex",),
        resume_flag="resume",
        resume_style="subcommand",
    ),
    AgentPresetInfo(
        name="cursor",
        command="cursor-agent",
        args=("-f",),
        process_names=("cursor-agent",),
        resume_flag="--resume",
        resume_style="flag",
    ),
    AgentPresetInfo(
        name="auggie",
        command="auggie",
        args=("--allow-indexing",),
        process_names=("auggie",),
        resume_flag="--resume",
        resume_style="flag",
    ),
    AgentPresetInfo(
        name="amp",
        command="amp",
        args=("--dangerously-allow-all", "--no-ide"),
        process_names=("amp",),
        resume_flag="threads continue",
        resume_style="subcommand",
    ),
)


@dataclass(frozen=True)
class RuntimeConfig:
    """User-level override of a preset's command and args."""

    command: str = ""
    args: Tuple[str, ...] = ()

    def merge_with_preset(self, preset: AgentPresetInfo) -> "RuntimeConfig":
        """Fill unset fields from the preset; user values win."""
        return RuntimeConfig(
            command=self.command or preset.command,
            args=tuple(self.args) if self.args else preset.args,
        )

    @classmethod
    def from_preset(cls, preset: AgentPresetInfo) -> "RuntimeConfig":
        return cls(command=preset.command, args=preset.args)


class AgentRegistry:
    """Immutable name -> preset mapping."""

    def __init__(self, presets: Mapping[str, AgentPresetInfo], version: int = CURRENT_REGISTRY_VERSION):
        self._presets = MappingProxyType(dict(presets))
        self.version = version

    @property
    def presets(self) -> Mapping[str, AgentPresetInfo]:
        return self._presets

    def __contains__(self, name: str) -> bool:
        return name in self._presets

    def __len__(self) -> int:
        return len(self._presets)

    def get(self, name: str) -> Optional[AgentPresetInfo]:
        return self._presets.get(name)

    def names(self) -> List[str]:
        return sorted(self._presets)

    def with_presets(self, extra: Mapping[str, AgentPresetInfo]) -> "AgentRegistry":
        """Return a new registry with extra presets layered on top."""
        merged = dict(self._presets)
        merged.update(extra)
        return AgentRegistry(merged, self.version)

    def is_builtin(self, name: str) -> bool:
        return any(p.name == name for p in BUILTIN_PRESETS)

    def startup_command(self, name: str) -> str:
        """Shell command that replaces the session shell with the agent.

        Example: 'exec claude --dangerously-skip-permissions'
        """
        preset = self.get(name)
        if preset is None:
            raise AgentRegistryError(f"unknown agent preset: {name}")
        return f"exec {preset.command_line()}"

    def process_names(self, name: str) -> Tuple[str, ...]:
        preset = self.get(name)
        if preset is None or not preset.process_names:
            return DEFAULT_PROCESS_NAMES
        return preset.process_names

    def session_id_env(self, name: str) -> str:
        preset = self.get(name)
        return preset.session_id_env if preset else ""

    def supports_session_resume(self, name: str) -> bool:
        preset = self.get(name)
        return bool(preset and preset.resume_flag)

    def build_resume_command(self, name: str, session_id: str) -> str:
        """Command line that resumes session_id, or '' when resume is impossible."""
        preset = self.get(name)
        if preset is None or not session_id or not preset.resume_flag:
            return ""

        if preset.resume_style == "subcommand":
            parts = [preset.command, preset.resume_flag, session_id, *preset.args]
        else:
            parts = [preset.command, *preset.args, preset.resume_flag, session_id]
        return " ".join(parts)


def builtin_registry() -> AgentRegistry:
    return AgentRegistry({p.name: p for p in BUILTIN_PRESETS})


def default_registry_path(root: Union[str, Path]) -> Path:
    """Registry file location for a town or rig directory."""
    return Path(root) / "settings" / "agents.json"


def parse_agent_registry(text: str, source: str = "<string>") -> Dict[str, AgentPresetInfo]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise AgentRegistryError(f"invalid agent registry {source}: {e}") from e

    if not isinstance(data, dict):
        raise AgentRegistryError(f"invalid agent registry {source}: expected an object")

    version = data.get("version", CURRENT_REGISTRY_VERSION)
    if version != CURRENT_REGISTRY_VERSION:
        raise AgentRegistryError(
            f"unsupported agent registry version {version} in {source} "
            f"(expected {CURRENT_REGISTRY_VERSION})"
        )

    agents = data.get("agents") or {}
    if not isinstance(agents, dict):
        raise AgentRegistryError(f"invalid agent registry {source}: 'agents' must be an object")
    return {name: AgentPresetInfo.from_dict(name, entry) for name, entry in agents.items()}


def load_agent_registry(
    path: Optional[Union[str, Path]] = None,
    base: Optional[AgentRegistry] = None,
) -> AgentRegistry:
    """
    Build a registry from the built-ins plus an optional JSON file.

    A missing file is not an error; the base registry is returned as is.

    Raises:
        AgentRegistryError: If the file exists but is not a valid registry.
    """
    registry = base if base is not None else builtin_registry()
    if path is None:
        return registry

    path = Path(path)
    if not path.exists():
        return registry

    try:
        text = path.read_text()
    except OSError as e:
        raise AgentRegistryError(f"cannot read agent registry {path}: {e}") from e
    return registry.with_presets(parse_agent_registry(text, str(path)))


def runtime_config_for(registry: AgentRegistry, name: str, override: Optional[RuntimeConfig] = None) -> RuntimeConfig:
    preset = registry.get(name)
    if preset is None:
        raise AgentRegistryError(f"unknown agent preset: {name}")
    if override is None:
        return RuntimeConfig.from_preset(preset)
    return override.merge_with_preset(preset)


__all__ = [
    "AgentPresetInfo",
    "AgentRegistry",
    "AgentRegistryError",
    "BUILTIN_PRESETS",
    "RuntimeConfig",
    "builtin_registry",
    "default_registry_path",
    "load_agent_registry",
    "parse_agent_registry",
    "runtime_config_for",
]
