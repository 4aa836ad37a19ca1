"""
Configuration module for the MCP hub.

Contains configuration constants for storage, resilience and connector
credentials. Every value can be overridden through an environment variable.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import os
import warnings


# Data Storage Configuration
# Override the data folder by setting the HUB_DATA_DIR environment variable.
# Example (bash): export HUB_DATA_DIR=/var/lib/mcp-hub

DATA_FOLDER = Path(
    os.environ.get("HUB_DATA_DIR", str(Path.home() / ".mcp_hub"))
)

# Store backend: "sqlite" (durable, default) or "memory" (ephemeral)
STORE_BACKENDS = ("sqlite", "memory")
STORE_BACKEND = os.environ.get("HUB_STORE", "sqlite").strip().lower()

if STORE_BACKEND not in STORE_BACKENDS:
    warnings.warn(
        f"Unknown HUB_STORE={STORE_BACKEND!r}. "
        f"Valid options: {list(STORE_BACKENDS)}. "
        f"Falling back to 'sqlite'.",
        stacklevel=2,
    )
    STORE_BACKEND = "sqlite"

SQLITE_PATH = Path(
    os.environ.get("HUB_DB_PATH", str(DATA_FOLDER / "hub_db" / "hub.db"))
)

# Directory blob store for offloaded artifact bodies (optional)
BLOB_FOLDER = os.environ.get("HUB_BLOB_DIR") or None

# Artifacts whose body is longer than this many characters are offloaded
# to the blob store when one is configured.
ARTIFACT_OFFLOAD_THRESHOLD = 50_000

# Result caps for list/search operations
MEMORY_SEARCH_LIMIT = 200
ARTIFACT_LIST_LIMIT = 200
LINK_LIST_LIMIT = 500
RUN_LIST_DEFAULT_LIMIT = 50


# Resilience Configuration
#
# ┌──────────────────────────┬─────────┬───────────────────────────────────┐
# │ Setting                  │ Default │ Meaning                           │
# ├──────────────────────────┼─────────┼───────────────────────────────────┤
# │ BREAKER_FAILURE_THRESHOLD│ 5       │ consecutive failures before OPEN  │
# │ BREAKER_RESET_SECONDS    │ 300     │ OPEN -> HALF_OPEN after this long │
# │ BULKHEAD_MAX_CONCURRENT  │ 5       │ in-flight calls per connector     │
# │ DISPATCH_TIMEOUT_SECONDS │ 15      │ hard deadline per tool call       │
# └──────────────────────────┴─────────┴───────────────────────────────────┘

BREAKER_FAILURE_THRESHOLD = 5
BREAKER_RESET_SECONDS = 5 * 60
BULKHEAD_MAX_CONCURRENT = 5
DISPATCH_TIMEOUT_SECONDS = 15.0

# Connector id shared by the internal data-model tools
CORE_CONNECTOR = "core"

# Per-request httpx timeout for connector calls; must stay below
# DISPATCH_TIMEOUT_SECONDS so a hung upstream frees its worker thread
CONNECTOR_HTTP_TIMEOUT_SECONDS = 10.0


def _env(name: str) -> Optional[str]:
    value = os.environ.get(name, "").strip()
    return value or None


@dataclass
class HubConfig:
    """
    Runtime configuration handed to the store factory and tool handlers.

    Attributes mirror the environment variables read by ``from_env``.
    Connector credentials are optional; a connector whose credentials are
    missing reports a failure result instead of calling upstream.
    """

    data_folder: Path = DATA_FOLDER
    store_backend: str = STORE_BACKEND
    sqlite_path: Path = SQLITE_PATH
    blob_folder: Optional[str] = BLOB_FOLDER
    offload_threshold: int = ARTIFACT_OFFLOAD_THRESHOLD

    api_key: Optional[str] = None

    r2_endpoint: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_bucket: Optional[str] = None
    r2_region: str = "auto"

    figma_token: Optional[str] = None
    github_token: Optional[str] = None
    atlassian_email: Optional[str] = None
    atlassian_api_token: Optional[str] = None
    confluence_base_url: Optional[str] = None
    slack_bot_token: Optional[str] = None
    gamma_api_key: Optional[str] = None

    http_timeout: float = CONNECTOR_HTTP_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> "HubConfig":
        """Build a config from the process environment."""
        return cls(
            api_key=_env("MCP_HUB_API_KEY"),
            r2_endpoint=_env("R2_ENDPOINT"),
            r2_access_key_id=_env("R2_ACCESS_KEY_ID"),
            r2_secret_access_key=_env("R2_SECRET_ACCESS_KEY"),
            r2_bucket=_env("R2_BUCKET"),
            r2_region=_env("R2_REGION") or "auto",
            figma_token=_env("FIGMA_TOKEN"),
            github_token=_env("GITHUB_TOKEN"),
            atlassian_email=_env("ATLASSIAN_EMAIL"),
            atlassian_api_token=_env("ATLASSIAN_API_TOKEN"),
            confluence_base_url=_env("CONFLUENCE_BASE_URL"),
            slack_bot_token=_env("SLACK_BOT_TOKEN"),
            gamma_api_key=_env("GAMMA_API_KEY"),
        )

    @property
    def r2_configured(self) -> bool:
        return all(
            (
                self.r2_endpoint,
                self.r2_access_key_id,
                self.r2_secret_access_key,
                self.r2_bucket,
            )
        )


# Server identity reported over MCP and by /v1/status
SERVER_NAME = "MCPHub"
SERVER_VERSION = "0.1.0"
