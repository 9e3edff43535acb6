"""
Config loader using stdlib tomllib.

Reads the optional ``clawwatch.toml`` file whose ``[collector]`` table
supplies defaults for CollectorConfig fields. Environment variables always
win over file values.
"""
import logging
import tomllib
from pathlib import Path
from typing import Any

from clawwatch_engine.config import CollectorConfig
from clawwatch_engine.exceptions import ConfigError

logger = logging.getLogger("clawwatch.engine.config_loader")


def load_toml(path: str | Path) -> dict[str, Any]:
    """
    Load a TOML file using stdlib tomllib.

    Args:
        path: Path to .toml file

    Returns:
        Parsed TOML as dict

    Raises:
        ConfigError: If path doesn't exist or the TOML is malformed
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"TOML file not found: {path}")

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {path}: {e}") from e

    logger.debug("Loaded TOML config: %s (%d keys)", path.name, len(data))
    return data


def load_collector_overrides(config_path: str | Path | None = None) -> dict[str, Any]:
    """
    Load the ``[collector]`` table of clawwatch.toml if it exists.

    Looks for `clawwatch.toml` in standard locations:
    1. Explicit path (if provided)
    2. ./clawwatch.toml
    3. ./config/clawwatch.toml
    4. /app/config/clawwatch.toml (Docker)

    Returns empty dict if no config file found (uses env vars only).
    """
    if config_path:
        data = load_toml(config_path)
    else:
        candidates = [
            Path("clawwatch.toml"),
            Path("config/clawwatch.toml"),
            Path("/app/config/clawwatch.toml"),
        ]
        data = {}
        for candidate in candidates:
            if candidate.exists():
                logger.info("Found collector config: %s", candidate)
                data = load_toml(candidate)
                break
        else:
            logger.debug("No clawwatch.toml found — using environment variables only")

    section = data.get("collector", {})
    if not isinstance(section, dict):
        raise ConfigError("[collector] in clawwatch.toml must be a table")

    unknown = set(section) - set(CollectorConfig.model_fields)
    if unknown:
        logger.warning("Ignoring unknown collector settings: %s", ", ".join(sorted(unknown)))
    return {k: v for k, v in section.items() if k in CollectorConfig.model_fields}


def load_collector_config(config_path: str | Path | None = None) -> CollectorConfig:
    """Build the validated CollectorConfig (environment over TOML over defaults)."""
    return CollectorConfig.from_env(load_collector_overrides(config_path))
