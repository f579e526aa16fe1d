"""Configuration manager for structgraph using TOML files.

Example ``~/.structgraph/config.toml``::

    [servers.typescript]
    command = "typescript-language-server"
    args = ["--stdio"]

    [servers.terraform]
    enabled = false
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from . import config

logger = logging.getLogger(__name__)


@dataclass
class ServerConfig:
    """How to launch the language server for one language."""

    language: str
    command: str
    args: List[str] = field(default_factory=list)
    enabled: bool = True

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the whole TOML config.

    Returns an empty dict when the file is missing or cannot be parsed.
    """
    config_path = path or config.CONFIG_FILE
    if not config_path.exists():
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return toml.load(f)
    except (toml.TomlDecodeError, OSError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", config_path, exc)
        return {}


def load_server_configs(path: Optional[Path] = None) -> Dict[str, ServerConfig]:
    """Return ``{language: ServerConfig}`` with user overrides merged over defaults."""
    servers: Dict[str, ServerConfig] = {
        language: ServerConfig(language=language, command=command, args=list(args))
        for language, (command, args) in config.DEFAULT_SERVERS.items()
    }

    overrides = load_config(path).get("servers", {})
    for language, raw in overrides.items():
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed [servers.%s] section", language)
            continue
        base = servers.get(language)
        command = raw.get("command", base.command if base else "")
        if not command:
            logger.warning("No command configured for language server '%s'", language)
            continue
        servers[language] = ServerConfig(
            language=language,
            command=command,
            args=list(raw.get("args", base.args if base else [])),
            enabled=bool(raw.get("enabled", True)),
        )
    return servers
