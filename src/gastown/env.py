"""Environment variables for agent sessions.

Every session started by gt gets a role-specific environment so the agent
(and the bd/git tooling it runs) knows who it is:

    GT_ROLE            mayor | deacon | witness | refinery | polecat | crew | boot
    GT_RIG             rig name (rig-scoped roles only)
    GT_POLECAT/GT_CREW instance name
    BD_ACTOR           identity recorded by beads for mutations
    GIT_AUTHOR_NAME    instance name for workers, actor otherwise
    BEADS_AGENT_NAME   rig/name for workers
    BEADS_NO_DAEMON    "1" when the bd daemon must not be used
    GT_ROOT            town root
    BEADS_DIR          beads database directory
    CLAUDE_CONFIG_DIR  per-account runtime config directory
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

Env = Dict[str, str]


@dataclass
class AgentEnvConfig:
    role: str
    rig: str = ""
    agent_name: str = ""
    town_root: str = ""
    beads_dir: str = ""
    beads_no_daemon: bool = False
    runtime_config_dir: str = ""


def bd_actor(role: str, rig: str = "", agent_name: str = "") -> str:
    """The actor string beads records for an agent."""
    if role == "mayor":
        return "mayor"
    if role == "deacon":
        return "deacon"
    if role == "boot":
        return "deacon-boot"
    if role == "polecat":
        return f"{rig}/polecats/{agent_name}"
    if role == "crew":
        return f"{rig}/crew/{agent_name}"
    return f"{rig}/{role}"


def agent_env(cfg: AgentEnvConfig) -> Env:
    env: Env = {"GT_ROLE": cfg.role}

    if cfg.rig:
        env["GT_RIG"] = cfg.rig

    actor = bd_actor(cfg.role, cfg.rig, cfg.agent_name)
    env["BD_ACTOR"] = actor

    if cfg.role == "polecat":
        env["GT_POLECAT"] = cfg.agent_name
    elif cfg.role == "crew":
        env["GT_CREW"] = cfg.agent_name

    if cfg.role in ("polecat", "crew"):
        env["GIT_AUTHOR_NAME"] = cfg.agent_name
        env["BEADS_AGENT_NAME"] = f"{cfg.rig}/{cfg.agent_name}"
    elif cfg.role == "boot":
        env["GIT_AUTHOR_NAME"] = "boot"
    else:
        env["GIT_AUTHOR_NAME"] = actor

    if cfg.beads_no_daemon:
        env["BEADS_NO_DAEMON"] = "1"
    if cfg.town_root:
        env["GT_ROOT"] = str(cfg.town_root)
    if cfg.beads_dir:
        env["BEADS_DIR"] = str(cfg.beads_dir)
    if cfg.runtime_config_dir:
        env["CLAUDE_CONFIG_DIR"] = str(cfg.runtime_config_dir)

    return env


def agent_env_simple(role: str, rig: str = "", agent_name: str = "") -> Env:
    return agent_env(AgentEnvConfig(role=role, rig=rig, agent_name=agent_name))


def export_prefix(env: Env) -> str:
    """'export A=1 B=2 && ' with keys sorted, or '' for an empty env."""
    if not env:
        return ""
    assignments = " ".join(f"{key}={env[key]}" for key in sorted(env))
    return f"export {assignments} && "


def build_startup_command_with_env(env: Env, agent_cmd: str, prompt: str = "") -> str:
    command = export_prefix(env) + agent_cmd
    if prompt:
        command += f' "{prompt}"'
    return command


def merge_env(*envs: Optional[Env]) -> Env:
    """Later mappings override earlier ones."""
    merged: Env = {}
    for env in envs:
        if env:
            merged.update(env)
    return merged


def filter_env(env: Env, *keys: str) -> Env:
    return {k: v for k, v in env.items() if k in keys}


def without_env(env: Env, *keys: str) -> Env:
    return {k: v for k, v in env.items() if k not in keys}


def env_to_list(env: Env) -> List[str]:
    return [f"{k}={v}" for k, v in env.items()]
