"""
VTM - Configuration
===================
Where the manifest, ledger and cache live.

Resolution, lowest to highest precedence: built-in defaults, .vtmrc
(JSON) in the working directory, VTM_* environment variables, CLI flags.
A broken .vtmrc is reported and ignored.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from .cache import DEFAULT_TTL_SECONDS
from .errors import UsageError

logger = logging.getLogger(__name__)

CONFIG_FILE = ".vtmrc"

ENV_VARS = {
    "VTM_MANIFEST": "manifest_path",
    "VTM_HISTORY_DIR": "history_dir",
    "VTM_CACHE_DIR": "cache_dir",
    "VTM_CACHE_TTL": "cache_ttl_seconds",
}


class VTMConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    manifest_path: Path = Path("vtm.json")
    history_dir: Path = Path(".vtm-history")
    cache_dir: Path = Path(".claude/cache/research")
    cache_ttl_seconds: int = DEFAULT_TTL_SECONDS
    next_limit: int = 5

    def resolve_paths(self, base: Path) -> "VTMConfig":
        """Anchor relative paths at base"""
        return self.model_copy(update={
            name: base / getattr(self, name)
            for name in ("manifest_path", "history_dir", "cache_dir")
            if not getattr(self, name).is_absolute()
        })


def _read_rc(path: Path) -> Dict:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to parse {path}, using defaults: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"{path} must contain a JSON object, using defaults")
        return {}
    return data


def load_config(
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict] = None
) -> VTMConfig:
    cwd = Path(cwd or Path.cwd())
    env = os.environ if env is None else env

    values = _read_rc(cwd / CONFIG_FILE)
    try:
        VTMConfig.model_validate(values)
    except ValidationError as e:
        logger.warning(f"Invalid {CONFIG_FILE}, using defaults: {e}")
        values = {}

    for var, name in ENV_VARS.items():
        if env.get(var):
            values[name] = env[var]
    for name, value in (overrides or {}).items():
        if value is not None:
            values[name] = value

    try:
        config = VTMConfig.model_validate(values)
    except ValidationError as e:
        raise UsageError(f"Invalid configuration: {e}") from e
    return config.resolve_paths(cwd)
