"""Configuration paths and defaults for structgraph."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("STRUCTGRAPH_HOME", str(Path.home() / ".structgraph"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"

# Seconds to wait for a single language-server reply
LSP_REQUEST_TIMEOUT = float(os.environ.get("STRUCTGRAPH_LSP_TIMEOUT", "10"))
LSP_SHUTDOWN_GRACE = 2.0

# language -> (command, args)
DEFAULT_SERVERS = {
    "javascript": ("typescript-language-server", ["--stdio"]),
    "typescript": ("typescript-language-server", ["--stdio"]),
    "tsx": ("typescript-language-server", ["--stdio"]),
    "terraform": ("terraform-ls", ["serve"]),
}

# Blast radius severity: affected count <= LOW_MAX is low, <= MEDIUM_MAX medium
SEVERITY_LOW_MAX = 5
SEVERITY_MEDIUM_MAX = 20

# Number of blast-radius rows shown by the CLI
DISPLAY_LIMIT = 20
