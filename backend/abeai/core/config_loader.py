"""Configuration loader for the JSON rule tables."""

import json
import logging
from functools import lru_cache
from pathlib import Path

from abeai.core.config_types import RulesConfig

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).parent.parent / "config"
RULES_PATH = CONFIG_DIR / "rules.json"


class RulesConfigError(Exception):
    """Raised when the rule tables cannot be loaded."""


def _validate(rules: RulesConfig) -> None:
    """Best-effort warnings for rule tables that are unlikely to work as intended."""
    seen: dict[str, str] = {}
    for pillar in rules.pillars:
        if not pillar.keywords:
            logger.warning(f"Pillar {pillar.name} has no keywords and will never match")
        for keyword in pillar.keywords:
            if keyword in seen:
                logger.warning(
                    f"Keyword '{keyword}' appears in pillars {seen[keyword]} and {pillar.name}; "
                    f"{seen[keyword]} wins"
                )
            else:
                seen[keyword] = pillar.name

    if not rules.get_pillar(rules.welcome.pillar):
        logger.warning(f"Welcome pillar '{rules.welcome.pillar}' is not a configured pillar")


@lru_cache(maxsize=1)
def load_rules(path: str = str(RULES_PATH)) -> RulesConfig:
    """
    Load the rule tables from JSON.

    Args:
        path: Location of the rules file (defaults to the packaged rules.json)

    Returns:
        Parsed RulesConfig

    Raises:
        RulesConfigError: if the file is missing or malformed
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise RulesConfigError(f"Rules config not found: {path}") from e
    except json.JSONDecodeError as e:
        raise RulesConfigError(f"Invalid JSON in {path}: {e}") from e

    try:
        rules = RulesConfig.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise RulesConfigError(f"Invalid rules config in {path}: {e}") from e

    _validate(rules)
    return rules


def get_rules() -> RulesConfig:
    """Get the cached rule tables."""
    return load_rules()


def reload_configs() -> None:
    """
    Clear config caches to reload from disk.

    Call this after modifying JSON files to pick up changes
    without restarting the server.
    """
    load_rules.cache_clear()
    logger.info("Configuration caches cleared")


def get_config_dir() -> Path:
    """Get the config directory path."""
    return CONFIG_DIR
