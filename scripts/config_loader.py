"""
Configuration Loader for the diagnostics workflow engine.

Implements a layered configuration system:
    hardcoded defaults < profile YAML < .dxgraph.yml < env vars < explicit overrides

Usage:
    from config_loader import build_config
    config = build_config(profile="standard")
    executor = WorkflowExecutor.from_config(config, plugins=plugins)
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Project root detection
# ---------------------------------------------------------------------------

def _find_project_root() -> Path:
    """Find the project root by looking for ``profiles/`` next to ``scripts/``."""
    current = Path(__file__).resolve().parent
    for ancestor in [current, *current.parents]:
        if (ancestor / "profiles").is_dir() and (ancestor / "scripts").is_dir():
            return ancestor
    return current.parent


PROJECT_ROOT = _find_project_root()

# ---------------------------------------------------------------------------
# Default configuration
# ---------------------------------------------------------------------------

def get_default_config() -> Dict[str, Any]:
    """Return all configuration parameters with sensible defaults.

    This is the lowest-priority layer.  Every configurable key must appear
    here so that downstream code never needs to guard against missing keys.
    """
    return {
        # -- Sandbox --
        "sandbox_time_ms": 30_000,
        "sandbox_mem_mb": 512,
        "sandbox_isolation": "process",
        "sandbox_poll_interval_ms": 50,

        # -- Workflow --
        "workflow_timeout_ms": 300_000,
        "max_parallel_nodes": 8,
        "seed_default_workflows": True,

        # -- Checkpointing --
        "enable_checkpointing": False,
        "checkpoint_db_path": "",
    }

# ---------------------------------------------------------------------------
# Profile loading
# ---------------------------------------------------------------------------

def _profile_search_paths(profile_name: str) -> List[Path]:
    """Return candidate YAML paths for *profile_name*, in priority order."""
    return [
        PROJECT_ROOT / "profiles" / f"{profile_name}.yml",              # built-in
        Path.home() / ".dxgraph" / "profiles" / f"{profile_name}.yml",  # user
        Path(".dxgraph") / "profiles" / f"{profile_name}.yml",          # project-local
    ]


def _locate_profile(profile_name: str) -> Path:
    candidates = _profile_search_paths(profile_name)
    found = next((p for p in candidates if p.is_file()), None)
    if found is None:
        raise FileNotFoundError(
            f"Profile '{profile_name}' not found.  Searched: "
            + ", ".join(str(p) for p in candidates)
        )
    return found


def _load_raw_profile(profile_name: str, seen: tuple = ()) -> dict:
    """Nested YAML for *profile_name* with its ``_extends`` parents folded in.

    Raises ``FileNotFoundError`` for a missing profile and ``ValueError``
    when the ``_extends`` chain loops back on itself.
    """
    if profile_name in seen:
        chain = " -> ".join(seen + (profile_name,))
        raise ValueError(f"Circular profile inheritance detected: {chain}")

    path = _locate_profile(profile_name)
    logger.info("Loading profile '%s' from %s", profile_name, path)
    with open(path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    parent = raw.pop("_extends", None)
    if not parent:
        return raw
    return _overlay(_load_raw_profile(parent, seen + (profile_name,)), raw)


def _overlay(parent: dict, child: dict) -> dict:
    """Child profile sections replace the parent's key by key."""
    result = dict(parent)
    for key, value in child.items():
        inherited = result.get(key)
        if isinstance(inherited, dict) and isinstance(value, dict):
            value = _overlay(inherited, value)
        result[key] = value
    return result

# ---------------------------------------------------------------------------
# Flatten nested YAML -> flat config dict
# ---------------------------------------------------------------------------

# section -> {yaml key: flat config key}
_SECTION_KEYS: Dict[str, Dict[str, str]] = {
    "sandbox": {
        "time_ms": "sandbox_time_ms",
        "mem_mb": "sandbox_mem_mb",
        "isolation": "sandbox_isolation",
        "poll_interval_ms": "sandbox_poll_interval_ms",
    },
    "workflow": {
        "timeout_ms": "workflow_timeout_ms",
        "max_parallel_nodes": "max_parallel_nodes",
        "seed_defaults": "seed_default_workflows",
    },
    "checkpoint": {
        "enabled": "enable_checkpointing",
        "db_path": "checkpoint_db_path",
    },
}


def flatten_profile(nested: dict) -> Dict[str, Any]:
    """Convert a nested profile YAML dict to a flat config dict.

    Mapping rules:
    - ``nested["sandbox"]["time_ms"]``     -> ``sandbox_time_ms``
    - ``nested["workflow"]["timeout_ms"]`` -> ``workflow_timeout_ms``
    - ``nested["workflow"]["seed_defaults"]`` -> ``seed_default_workflows``
    - ``nested["checkpoint"]["enabled"]``  -> ``enable_checkpointing``
    - ``nested["checkpoint"]["db_path"]``  -> ``checkpoint_db_path``
    - Top-level ``name`` and ``description`` are passed through as-is.

    Unknown keys inside a known section are logged and dropped.  Only
    non-None values are included.
    """
    flat: Dict[str, Any] = {}

    for section, keys in _SECTION_KEYS.items():
        block = nested.get(section)
        if not isinstance(block, dict):
            continue
        for key, value in block.items():
            if value is None:
                continue
            if key not in keys:
                logger.warning("Ignoring unknown profile key %s.%s", section, key)
                continue
            flat[keys[key]] = value

    for scalar_key in ("name", "description"):
        if nested.get(scalar_key) is not None:
            flat[scalar_key] = nested[scalar_key]

    return flat


def load_profile(profile_name: str) -> Dict[str, Any]:
    """Load a profile by name and return a flat config dict.

    The first existing file is used, checked in this order:
      1. ``{PROJECT_ROOT}/profiles/{name}.yml``   (built-in)
      2. ``~/.dxgraph/profiles/{name}.yml``        (user)
      3. ``.dxgraph/profiles/{name}.yml``          (project-local)

    The ``_extends`` key enables profile inheritance: the parent profile is
    loaded first and the child values are overlaid on top.
    """
    raw = _load_raw_profile(profile_name)
    return flatten_profile(raw)

# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

def _parse_flag(raw: str) -> bool:
    return raw.strip().lower() in ("true", "1", "yes", "on")


# DX_* variable -> (config key, parser)
_ENV_VARS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "DX_SANDBOX_TIME_MS": ("sandbox_time_ms", int),
    "DX_SANDBOX_MEM_MB": ("sandbox_mem_mb", int),
    "DX_SANDBOX_ISOLATION": ("sandbox_isolation", str),
    "DX_WORKFLOW_TIMEOUT_MS": ("workflow_timeout_ms", int),
    "DX_ENABLE_CHECKPOINTING": ("enable_checkpointing", _parse_flag),
    "DX_CHECKPOINT_DB": ("checkpoint_db_path", str),
    "DX_MAX_PARALLEL_NODES": ("max_parallel_nodes", int),
}


def load_env_overrides() -> Dict[str, Any]:
    """Config values taken from the ``DX_*`` variables that are set.

    Unset variables contribute nothing; unparseable ones are logged and
    dropped.
    """
    overrides: Dict[str, Any] = {}
    for env_name, (config_key, parse) in _ENV_VARS.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            overrides[config_key] = parse(raw)
        except ValueError as exc:
            logger.warning("Ignoring %s=%r: %s", env_name, raw, exc)
    return overrides

# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """New flat dict: *base* updated with the non-None values of *override*."""
    return {**base, **{k: v for k, v in override.items() if v is not None}}


def _load_project_yml(repo_path: str) -> Dict[str, Any]:
    """Load ``.dxgraph.yml`` from *repo_path*; empty dict when absent."""
    yml_path = Path(repo_path) / ".dxgraph.yml"
    if not yml_path.is_file():
        return {}

    logger.info("Loading .dxgraph.yml from %s", yml_path)
    with open(yml_path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    return flatten_profile(raw)

# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def build_config(
    profile: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    repo_path: str = ".",
) -> Dict[str, Any]:
    """Build a fully-merged configuration dict.

    Layer precedence (last wins):
        1. Hard-coded defaults          (``get_default_config()``)
        2. Profile YAML                 (``load_profile()``)
        3. ``.dxgraph.yml``             (project-level overrides)
        4. Environment variables        (``load_env_overrides()``)
        5. Explicit overrides           (*overrides*)

    Parameters
    ----------
    profile:
        Explicit profile name.  If ``None``, the ``DX_PROFILE`` env var is
        consulted.
    overrides:
        Flat config values from the caller; ``None`` values are ignored.
    repo_path:
        Directory searched for ``.dxgraph.yml``.
    """
    config = get_default_config()

    profile_name = profile or os.environ.get("DX_PROFILE")
    if profile_name:
        try:
            config = deep_merge(config, load_profile(profile_name))
            logger.info("Applied profile '%s'", profile_name)
        except FileNotFoundError:
            logger.warning("Profile '%s' not found; skipping", profile_name)

    project = _load_project_yml(repo_path)
    if project:
        config = deep_merge(config, project)
        logger.info("Applied .dxgraph.yml overrides (%d keys)", len(project))

    env_overrides = load_env_overrides()
    if env_overrides:
        config = deep_merge(config, env_overrides)
        logger.debug("Applied %d env-var overrides", len(env_overrides))

    if overrides:
        config = deep_merge(config, overrides)
        logger.debug("Applied %d explicit overrides", len(overrides))

    return config

# ---------------------------------------------------------------------------
# Profile discovery
# ---------------------------------------------------------------------------

def list_available_profiles() -> List[str]:
    """Return the names of all profiles found in the search directories."""
    names: set = set()

    search_dirs = [
        PROJECT_ROOT / "profiles",
        Path.home() / ".dxgraph" / "profiles",
        Path(".dxgraph") / "profiles",
    ]
    for directory in search_dirs:
        if directory.is_dir():
            for yml_file in directory.glob("*.yml"):
                names.add(yml_file.stem)

    return sorted(names)

# ---------------------------------------------------------------------------
# Configuration validation
# ---------------------------------------------------------------------------

_VALID_ISOLATION_MODES = {"process", "thread"}

_POSITIVE_INT_KEYS = (
    "sandbox_time_ms",
    "sandbox_mem_mb",
    "sandbox_poll_interval_ms",
    "workflow_timeout_ms",
    "max_parallel_nodes",
)


def validate_config(config: Dict[str, Any]) -> List[str]:
    """Validate a configuration dict and return a list of warnings/errors.

    An empty list means the config is valid.
    """
    issues: List[str] = []

    isolation = config.get("sandbox_isolation", "process")
    if isolation not in _VALID_ISOLATION_MODES:
        issues.append(
            f"ERROR: Invalid sandbox_isolation '{isolation}'. "
            f"Must be one of: {', '.join(sorted(_VALID_ISOLATION_MODES))}"
        )

    for key in _POSITIVE_INT_KEYS:
        value = config.get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            issues.append(f"ERROR: {key} must be a positive integer, got {value!r}.")

    if (
        isinstance(config.get("sandbox_time_ms"), int)
        and isinstance(config.get("workflow_timeout_ms"), int)
        and config["sandbox_time_ms"] > config["workflow_timeout_ms"]
    ):
        issues.append(
            "WARNING: sandbox_time_ms exceeds workflow_timeout_ms; plugins will "
            "be cut off by the workflow deadline first."
        )

    if config.get("checkpoint_db_path") and not config.get("enable_checkpointing"):
        issues.append(
            "WARNING: checkpoint_db_path is set but enable_checkpointing is false. "
            "Only workflows that enable checkpointing themselves will persist."
        )

    return issues
