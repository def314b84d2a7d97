"""Configuration loading and management."""

from pathlib import Path
from typing import Optional

import yaml

from .config_models import CortexConfig

# Default config dict
DEFAULT_CONFIG = CortexConfig().to_dict()


def find_config() -> Optional[Path]:
    """Find config file in standard locations."""
    locations = [
        Path.cwd() / "cortex.yaml",
        Path.home() / ".cortex" / "config.yaml",
    ]
    for loc in locations:
        if loc.exists():
            return loc
    return None


def load_config(config_path: Optional[Path] = None) -> dict:
    """Load configuration from file or defaults.

    Returns a plain dict. Use load_config_model() for typed access.
    """
    model = load_config_model(config_path)
    return model.to_dict()


def load_config_model(config_path: Optional[Path] = None) -> CortexConfig:
    """Load configuration as Pydantic model with validation."""
    base_config = {}

    path = config_path or find_config()
    if path and path.exists():
        try:
            with open(path) as f:
                base_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {e}")

    try:
        return CortexConfig.from_dict(base_config)
    except Exception as e:
        raise ValueError(f"Config validation failed: {e}")


def get_paths(config: dict) -> dict:
    """Get expanded paths from config."""
    paths = config.get("paths", DEFAULT_CONFIG["paths"])
    chroma = paths.get("chroma_dir")
    log_file = paths.get("log_file")
    return {
        "db_path": Path(paths["db_path"]).expanduser(),
        "chroma_dir": Path(chroma).expanduser() if chroma else None,
        "log_file": Path(log_file).expanduser() if log_file else None,
    }
