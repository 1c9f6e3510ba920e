"""
Environment variable management with .env file support.

Loads .env files through python-dotenv and exposes typed getters used by
the configuration dataclasses (booleans, integers, floats, lists and
Go-style durations such as ``30s``, ``100ms`` or ``1m30s``).
"""

from __future__ import annotations

import os
import re
from pathlib import Path

try:
    from dotenv import load_dotenv
except ImportError:
    load_dotenv = None


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """
    Parse a duration string into seconds.

    Accepts bare numbers (seconds) and unit-suffixed values that may be
    chained, e.g. ``"1m30s"`` -> 90.0, ``"100ms"`` -> 0.1.

    Raises:
        ValueError: If the string is not a valid duration
    """
    text = value.strip()
    if not text:
        msg = "empty duration"
        raise ValueError(msg)
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        msg = f"invalid duration: {value!r}"
        raise ValueError(msg)
    return total


class EnvManager:
    """
    Manages environment variables for brokerz.

    Example:
        >>> env = EnvManager()
        >>> env.get_duration("RABBITMQ_CONNECTION_TIMEOUT", 30.0)
        30.0
    """

    def __init__(self, project_root: Path | str | None = None, auto_load: bool = True):
        """
        Initialize the environment manager.

        Args:
            project_root: Directory searched for a .env file
            auto_load: Load the .env file right away when it exists
        """
        self.project_root = Path(project_root) if project_root else Path.cwd()
        self._loaded = False

        if auto_load:
            self.load()

    def load(self, env_file: str | Path | None = None, override: bool = False) -> bool:
        """
        Load environment variables from a .env file.

        Returns:
            True if a file was loaded, False otherwise
        """
        if load_dotenv is None:
            return False

        env_file = self.project_root / ".env" if env_file is None else Path(env_file)
        if not env_file.exists():
            return False

        load_dotenv(env_file, override=override)
        self._loaded = True
        return True

    @property
    def loaded(self) -> bool:
        return self._loaded

    def get(self, key: str, default: str | None = None, required: bool = False) -> str | None:
        """
        Get an environment variable value.

        Raises:
            ValueError: If required=True and the variable is not set
        """
        value = os.environ.get(key, default)

        if required and value is None:
            msg = f"Required environment variable not set: {key}"
            raise ValueError(msg)

        return value

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get environment variable as boolean."""
        value = (self.get(key) or "").lower()
        if value in ("true", "1", "yes", "on"):
            return True
        if value in ("false", "0", "no", "off"):
            return False
        return default

    def get_int(self, key: str, default: int = 0) -> int:
        """Get environment variable as integer."""
        try:
            return int(self.get(key, str(default)))
        except (ValueError, TypeError):
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Get environment variable as float."""
        try:
            return float(self.get(key, str(default)))
        except (ValueError, TypeError):
            return default

    def get_duration(self, key: str, default: float) -> float:
        """Get environment variable as a duration in seconds."""
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return parse_duration(raw)
        except ValueError:
            return default

    def get_list(self, key: str, default: list[str] | None = None, sep: str = ",") -> list[str]:
        """Get a separator-delimited environment variable as a list."""
        raw = self.get(key)
        if raw is None:
            return list(default or [])
        return [item.strip() for item in raw.split(sep) if item.strip()]


_env_manager: EnvManager | None = None


def get_env() -> EnvManager:
    """Get the process-wide EnvManager, loading .env on first use."""
    global _env_manager
    if _env_manager is None:
        _env_manager = EnvManager()
    return _env_manager
