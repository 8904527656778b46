"""Layered settings for CryptoPulse.

Values come from ``defaults.yaml`` beside this module, an optional profile
under ``profiles/``, and finally ``CRYPTOPULSE__SECTION__KEY`` environment
variables.  Override values are parsed as YAML scalars, so ``"5"`` becomes an
int and ``"[bitcoin, solana]"`` a list.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

ENV_PREFIX = "CRYPTOPULSE__"
PROFILE_ENV_VAR = f"{ENV_PREFIX}PROFILE"
CONFIG_DIR = Path(__file__).resolve().parent


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, Mapping):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_document(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    text = path.read_text(encoding="utf-8")
    raw = yaml.safe_load(text) if path.suffix in {".yaml", ".yml"} else json.loads(text)
    return _expand_env(raw or {})


def _read_named(directory: Path, stem: str) -> Dict[str, Any]:
    """Load ``stem.yaml`` (or ``.yml``/``.json``) from ``directory``."""
    for suffix in (".yaml", ".yml", ".json"):
        data = _read_document(directory / f"{stem}{suffix}")
        if data:
            return data
    return {}


def _parse_override(raw: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Nested overrides from ``CRYPTOPULSE__SECTION__KEY=value`` variables."""
    overrides: Dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX) or name == PROFILE_ENV_VAR:
            continue
        keys = [part.lower() for part in name[len(ENV_PREFIX):].split("__") if part]
        if not keys:
            continue
        cursor = overrides
        for key in keys[:-1]:
            cursor = cursor.setdefault(key, {})
        cursor[keys[-1]] = _parse_override(raw)
    return overrides


def default_project_root() -> Path:
    env_root = os.environ.get("PROJECT_ROOT")
    if env_root:
        return Path(env_root)
    src_dir = CONFIG_DIR.parent.parent
    # Source checkouts keep the package under "src"; installed copies do not.
    return src_dir.parent if src_dir.name == "src" else Path.cwd()


def _resolve_paths(paths: Mapping[str, Any], root: Path) -> Dict[str, Any]:
    resolved: Dict[str, Any] = {}
    for key, value in paths.items():
        if isinstance(value, str):
            candidate = Path(value).expanduser()
            value = str((candidate if candidate.is_absolute() else root / candidate).resolve())
        resolved[key] = value
    return resolved


@dataclass(frozen=True)
class Settings:
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, *keys: str, default: Any = None) -> Any:
        node: Any = self.data
        for key in keys:
            if not isinstance(node, dict):
                return default
            node = node.get(key)
            if node is None:
                return default
        return node

    def get_int(self, *keys: str, default: int = 0) -> int:
        return int(self.get(*keys, default=default))

    def get_float(self, *keys: str, default: float = 0.0) -> float:
        return float(self.get(*keys, default=default))

    def get_list(self, *keys: str) -> List[str]:
        """Read a list of names; a comma separated string also works."""
        value = self.get(*keys)
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return [str(item) for item in value]

    def replace(self, **updates: Any) -> "Settings":
        return replace(self, data=_deep_merge(self.data, updates))

    def dump(self) -> Dict[str, Any]:
        return self.data


_cached: Optional[Settings] = None


def reset_settings() -> None:
    """Drop the cached settings so the next load re-reads files and env."""
    global _cached
    _cached = None


def load_settings(profile: Optional[str] = None, *, project_root: Optional[Path] = None) -> Settings:
    """Build settings; the default call is cached for the process."""
    global _cached
    use_cache = profile is None and project_root is None
    if use_cache and _cached is not None:
        return _cached

    merged = _read_named(CONFIG_DIR, "defaults")
    chosen = profile or os.environ.get(PROFILE_ENV_VAR)
    if chosen:
        merged = _deep_merge(merged, _read_named(CONFIG_DIR / "profiles", chosen))
    merged = _deep_merge(merged, env_overrides(os.environ))
    merged["paths"] = _resolve_paths(merged.get("paths") or {}, project_root or default_project_root())

    settings = Settings(data=merged)
    if use_cache:
        _cached = settings
    return settings


__all__ = ["Settings", "env_overrides", "load_settings", "reset_settings"]
