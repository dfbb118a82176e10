"""Pipeline configuration.

Settings are resolved in increasing precedence:

1. defaults on :class:`PipelineConfig`
2. ``[tool.layoffs]`` in ``pyproject.toml``
3. ``LAYOFFS_*`` environment variables (a ``.env`` found by walking
   upward from the CWD is loaded first)
4. explicit overrides (CLI flags)
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from dotenv import find_dotenv, load_dotenv

DEFAULT_DATE_FORMATS: tuple[str, ...] = ("%m/%d/%Y", "%Y-%m-%d")
DEFAULT_TOP_N = 5
DEFAULT_FOCUS_COUNTRY = "United States"

_ENV_KEYS = {
    "source": "LAYOFFS_SOURCE",
    "db_path": "LAYOFFS_DB",
    "top_n": "LAYOFFS_TOP_N",
    "focus_country": "LAYOFFS_COUNTRY",
    "export_dir": "LAYOFFS_EXPORT_DIR",
}
_PATH_FIELDS = {"source", "db_path", "export_dir"}
_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


class ConfigError(ValueError):
    """Raised for unreadable or ill-typed configuration."""


@dataclass(frozen=True)
class PipelineConfig:
    source: Path | None = None
    db_path: Path | None = None
    date_formats: tuple[str, ...] = field(default=DEFAULT_DATE_FORMATS)
    top_n: int = DEFAULT_TOP_N
    focus_country: str = DEFAULT_FOCUS_COUNTRY
    keep_staging: bool = False
    export_dir: Path | None = None

    def __post_init__(self) -> None:
        if isinstance(self.top_n, bool) or not isinstance(self.top_n, int):
            raise ConfigError(f"top_n must be an integer, got {self.top_n!r}")
        if self.top_n < 1:
            raise ConfigError(f"top_n must be positive, got {self.top_n}")
        if not self.date_formats:
            raise ConfigError("date_formats must not be empty")
        if not self.focus_country:
            raise ConfigError("focus_country must not be empty")

    def to_meta(self) -> dict[str, Any]:
        """JSON-friendly view of the config for run metadata."""
        out = asdict(self)
        for key in _PATH_FIELDS:
            if out[key] is not None:
                out[key] = str(out[key])
        out["date_formats"] = list(self.date_formats)
        return out


def _read_pyproject(root: Path) -> dict[str, Any]:
    pyproject_path = root / "pyproject.toml"
    if not pyproject_path.exists():
        return {}
    try:
        data = tomllib.loads(pyproject_path.read_text())
    except OSError as e:
        raise ConfigError(f"Failed to read {pyproject_path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {pyproject_path}: {e}") from e
    section = data.get("tool", {}).get("layoffs", {})
    if not isinstance(section, dict):
        raise ConfigError("[tool.layoffs] must be a table")
    return section


def _coerce(key: str, value: Any, base_dir: Path) -> Any:
    if key in _PATH_FIELDS:
        if not isinstance(value, (str, Path)) or not str(value).strip():
            raise ConfigError(f"{key} must be a non-empty path string")
        path = Path(value).expanduser()
        return path if path.is_absolute() else base_dir / path
    if key == "top_n":
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        raise ConfigError(f"top_n must be an integer, got {value!r}")
    if key == "date_formats":
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)) or not all(
            isinstance(v, str) for v in value
        ):
            raise ConfigError("date_formats must be a list of strings")
        return tuple(value)
    if key == "keep_staging":
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            flag = value.strip().lower()
            if flag in _TRUE_STRINGS:
                return True
            if flag in _FALSE_STRINGS:
                return False
        raise ConfigError(f"keep_staging must be a boolean, got {value!r}")
    if key == "focus_country":
        if not isinstance(value, str):
            raise ConfigError("focus_country must be a string")
        return value.strip()
    raise ConfigError(f"Unknown setting: {key}")


def load_config(root: Path | None = None, **overrides: Any) -> PipelineConfig:
    """Build a PipelineConfig from pyproject, environment and overrides.

    Relative paths from pyproject.toml resolve against *root*; relative
    paths from the environment or overrides resolve against the CWD.
    Overrides whose value is None are ignored.
    """
    root = Path(root) if root is not None else Path.cwd()
    cwd = Path.cwd()

    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path)

    values: dict[str, Any] = {}
    known = set(PipelineConfig.__dataclass_fields__)

    for key, value in _read_pyproject(root).items():
        key = key.replace("-", "_")
        if key not in known:
            raise ConfigError(f"Unknown setting in [tool.layoffs]: {key}")
        values[key] = _coerce(key, value, root)

    for key, env_name in _ENV_KEYS.items():
        raw = os.environ.get(env_name)
        if raw:
            values[key] = _coerce(key, raw, cwd)

    for key, value in overrides.items():
        if value is None:
            continue
        if key not in known:
            raise ConfigError(f"Unknown setting: {key}")
        values[key] = _coerce(key, value, cwd)

    return PipelineConfig(**values)
