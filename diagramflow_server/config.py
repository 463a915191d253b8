"""
Runtime settings, read from DIAGRAMFLOW_* environment variables.
"""

import os
from dataclasses import dataclass

from diagramflow_server.diagram_service import HISTORY_MAX

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765


@dataclass(frozen=True)
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    history_max: int = HISTORY_MAX
    log_level: str = "INFO"
    # Where the MCP tool server reaches the HTTP API
    api_base: str = f"http://{DEFAULT_HOST}:{DEFAULT_PORT}/api"

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        host = env.get("DIAGRAMFLOW_HOST", DEFAULT_HOST)
        port = int(env.get("DIAGRAMFLOW_PORT", DEFAULT_PORT))
        return cls(
            host=host,
            port=port,
            history_max=int(env.get("DIAGRAMFLOW_HISTORY_MAX", HISTORY_MAX)),
            log_level=env.get("DIAGRAMFLOW_LOG_LEVEL", "INFO").upper(),
            api_base=env.get("DIAGRAMFLOW_API_BASE", f"http://{host}:{port}/api"),
        )
