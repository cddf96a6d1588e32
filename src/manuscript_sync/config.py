"""Configuration constants for manuscript-sync."""

import os
from pathlib import Path

# API token location. First file found is used.
API_TOKEN_FILES: list[Path] = [
    Path("~/.config/manuscript-sync-token.txt").expanduser(),
    Path("~/.config/secret/manuscript-sync-token.txt").expanduser(),
    Path(f"/run/user/{os.getuid()}/manuscript-sync-token"),
]

# Directory with the cache database. First directory which is found is used.
DATA_DIRECTORIES: list[Path] = [
    Path("~/.local/share/manuscript-sync").expanduser(),
    Path("~/.manuscript-sync").expanduser(),
]

DEFAULT_STORE_URL: str = "http://localhost:5050/api/store"

# (connect, read) seconds for every external store request.
EXTERNAL_TIMEOUT: tuple[float, float] = (5.0, 30.0)

# Background threads used for fire-and-forget mirror writes.
MIRROR_WORKERS: int = 4

CACHE_DB_NAME: str = "cache.db"


def resolve_data_directory() -> Path:
    """Return the data directory: env override, first existing candidate, else the default."""
    env_dir = os.environ.get("MANUSCRIPT_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    for candidate in DATA_DIRECTORIES:
        if candidate.is_dir():
            return candidate
    return DATA_DIRECTORIES[0]


def resolve_store_url() -> str:
    return os.environ.get("MANUSCRIPT_STORE_URL", DEFAULT_STORE_URL).rstrip("/")


def resolve_principal() -> str | None:
    """Acting user id for the CLI and MCP server, if configured."""
    return os.environ.get("MANUSCRIPT_USER_ID") or None
