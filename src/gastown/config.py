"""Lightweight configuration loader and town discovery for gt.

Reads optional settings from ~/.gt/config.yaml and <town>/mayor/config.yaml
(town values win) with safe defaults.

Supported keys:
- heartbeat_interval: seconds between daemon heartbeats (default: 60)
- agent: default agent preset for new sessions (default: 'claude')
- agents_file: optional JSON file with extra agent presets
- bd_path: path to the bd CLI (default: 'bd')
- kill_settle_ms: pause between killing and restarting a session (default: 500)
- prime_delay_ms: pause between startup command and prime (default: 2000)
- ignite_wait_seconds: wait after starting a polecat session (default: 3.0)
- nudge_wait_seconds: wait before nudging a running session (default: 0.5)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional
import os

import yaml

# Marker that identifies the root of a town.
TOWN_MARKER = Path('mayor') / 'town.json'

# Top-level town directories that are never rigs.
NON_RIG_DIRS = {'mayor', 'daemon', 'deacon', 'logs', 'settings'}

_CONFIG_CACHE: Optional[Dict[str, Dict[str, Any]]] = None


class TownNotFoundError(Exception):
    """Raised when the working directory is not inside a town."""

    def __init__(self, start: Path):
        self.start = start
        super().__init__(f"not in a Gas Town workspace: {start}")


class RigInferenceError(Exception):
    """Raised when the current rig cannot be inferred from the working directory."""


def _defaults() -> Dict[str, Any]:
    return {
        'heartbeat_interval': 60,
        'agent': 'claude',
        'agents_file': None,
        'bd_path': 'bd',
        'kill_settle_ms': 500,
        'prime_delay_ms': 2000,
        'ignite_wait_seconds': 3.0,
        'nudge_wait_seconds': 0.5,
    }


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text())
    except (yaml.YAMLError, OSError):
        # Ignore malformed configs; fall back to defaults
        return {}
    return loaded if isinstance(loaded, dict) else {}


def get_config(town_root: Optional[Path] = None) -> Dict[str, Any]:
    """Load config once per town and cache the result."""
    global _CONFIG_CACHE
    key = str(town_root) if town_root else ''
    if _CONFIG_CACHE is not None and key in _CONFIG_CACHE:
        return _CONFIG_CACHE[key]

    merged = {**_defaults(), **_read_yaml(Path.home() / '.gt' / 'config.yaml')}
    if town_root is not None:
        merged.update(_read_yaml(Path(town_root) / 'mayor' / 'config.yaml'))

    if _CONFIG_CACHE is None:
        _CONFIG_CACHE = {}
    _CONFIG_CACHE[key] = merged
    return merged


def get_heartbeat_interval(town_root: Optional[Path] = None) -> float:
    return float(get_config(town_root).get('heartbeat_interval', _defaults()['heartbeat_interval']))


def get_bd_path(town_root: Optional[Path] = None) -> str:
    return str(get_config(town_root).get('bd_path') or 'bd')


def get_default_agent(town_root: Optional[Path] = None) -> str:
    return str(get_config(town_root).get('agent') or _defaults()['agent'])


def get_agents_file(town_root: Optional[Path] = None) -> Optional[Path]:
    """
    Get the agent registry file path.

    Priority: config key 'agents_file' > <town>/settings/agents.json if present.
    """
    configured = get_config(town_root).get('agents_file')
    if configured:
        return Path(configured).expanduser()
    if town_root is not None:
        candidate = Path(town_root) / 'settings' / 'agents.json'
        if candidate.exists():
            return candidate
    return None


def find_town_root(start: Optional[Path] = None) -> Optional[Path]:
    """
    Walk up from start (default: cwd) looking for mayor/town.json.

    Returns:
        The town root, or None when start is outside any town.
    """
    current = Path(start or os.getcwd()).resolve()
    for candidate in [current, *current.parents]:
        if (candidate / TOWN_MARKER).exists():
            return candidate
    return None


def require_town_root(start: Optional[Path] = None) -> Path:
    """Like find_town_root() but raises TownNotFoundError."""
    root = find_town_root(start)
    if root is None:
        raise TownNotFoundError(Path(start or os.getcwd()))
    return root


def infer_rig_from_cwd(town_root: Path, cwd: Optional[Path] = None) -> str:
    """
    Infer the rig name from the working directory.

    The rig is the first path component below the town root.

    Raises:
        RigInferenceError: If cwd is the town root itself, outside the town,
            or inside a town-level directory (mayor/, daemon/, ...).
    """
    town_root = Path(town_root).resolve()
    current = Path(cwd or os.getcwd()).resolve()
    try:
        rel = current.relative_to(town_root)
    except ValueError:
        raise RigInferenceError(f"{current} is not inside town {town_root}")

    if not rel.parts:
        raise RigInferenceError("at town root, not inside a rig (use rig/role form)")

    rig_name = rel.parts[0]
    if rig_name in NON_RIG_DIRS or rig_name.startswith('.'):
        raise RigInferenceError(f"'{rig_name}' is a town-level directory, not a rig")
    if not (town_root / rig_name).is_dir():
        raise RigInferenceError(f"rig '{rig_name}' not found in {town_root}")
    return rig_name
