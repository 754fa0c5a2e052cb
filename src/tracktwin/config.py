"""Configuration management for tracktwin.

Configuration is stored in a platform-specific location:
- Linux/macOS: ~/.config/tracktwin/tracktwin.toml
- Windows: %APPDATA%\\tracktwin\\tracktwin.toml
"""

import dataclasses
import os
import platform
import shutil
from pathlib import Path
from typing import Any, Dict, Optional, Union

import tomli_w
import tomllib

from .scanner import ScanOptions

CONFIG_FILENAME = "tracktwin.toml"


def get_config_dir() -> Path:
    """Get platform-specific configuration directory."""
    if platform.system() == "Windows":
        appdata = os.getenv("APPDATA")
        if not appdata:
            raise RuntimeError("APPDATA environment variable not set")
        return Path(appdata) / "tracktwin"
    return Path.home() / ".config" / "tracktwin"


def get_config_file() -> Path:
    """Get path to user configuration file."""
    return get_config_dir() / CONFIG_FILENAME


def default_config_template() -> Path:
    return Path(__file__).parent / "templates" / "default_config.toml"


def ensure_config_exists(config_file: Optional[Path] = None) -> Path:
    """
    Ensure user configuration file exists.

    If it doesn't exist, copy the default configuration from the package.

    Returns:
        Path to the user configuration file
    """
    config_file = config_file or get_config_file()
    if not config_file.exists():
        config_file.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy(default_config_template(), config_file)
    return config_file


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration from a TOML file.

    Args:
        path: Explicit config file; the user config is created from the
            template when omitted

    Returns:
        Configuration dictionary

    Raises:
        ValueError: If the file cannot be read or is not valid TOML
    """
    if path is None:
        config_file = ensure_config_exists()
    else:
        config_file = Path(path)

    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ValueError(f"Failed to load config {config_file}: {e}") from e


def save_config(config: Dict[str, Any], path: Optional[Union[str, Path]] = None) -> Path:
    """Write configuration dictionary to TOML file."""
    config_file = Path(path) if path is not None else get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "wb") as f:
        tomli_w.dump(config, f)
    return config_file


def scan_options_from_config(config: Dict[str, Any], **overrides: Any) -> ScanOptions:
    """
    Build ScanOptions from the [scan] table.

    Unknown keys are ignored. Overrides (typically command line flags) win
    over the file; overrides set to None are ignored.
    """
    known = {f.name for f in dataclasses.fields(ScanOptions)}
    values = {k: v for k, v in config.get("scan", {}).items() if k in known}
    values.update({k: v for k, v in overrides.items() if k in known and v is not None})
    return ScanOptions(**values)


def scan_options_to_config(config: Dict[str, Any], options: ScanOptions) -> Dict[str, Any]:
    """Copy of config with the [scan] table replaced by the given options."""
    updated = dict(config)
    updated["scan"] = dataclasses.asdict(options)
    return updated


def cache_dir_from_config(config: Dict[str, Any]) -> Optional[Path]:
    """Cache directory from the [cache] table; None means the default."""
    directory = config.get("cache", {}).get("directory", "")
    return Path(directory).expanduser() if directory else None
