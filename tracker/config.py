from typing import Dict, List, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings


class Config(BaseSettings):
    database_backend: str = Field(default="sql", env="DATABASE_BACKEND")
    database_url: str = Field(default="sqlite+aiosqlite:///database.sql", env="DATABASE_URL")
    log_to_database: bool = Field(default=True, env="LOG_TO_DATABASE")
    graph_duration_ms: int = Field(default=86_400_000, env="GRAPH_DURATION_MS")
    graph_interval_ms: int = Field(default=60_000, env="GRAPH_INTERVAL_MS")
    old_pings_cleanup_interval_ms: int = Field(default=3_600_000, env="OLD_PINGS_CLEANUP_INTERVAL_MS")
    is_graph_visible: bool = Field(default=True, env="IS_GRAPH_VISIBLE")
    servers: List[str] = Field(default=[], env="SERVERS")
    known_versions: Dict[str, str] = Field(default={}, env="KNOWN_VERSIONS")
    server_host: str = Field(default="0.0.0.0", env="SERVER_HOST")
    server_port: int = Field(default=8080, env="SERVER_PORT")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def service_descriptors(self) -> List[Tuple[str, str]]:
        """Split each `name=address` entry; a bare address is its own name."""
        descriptors = []
        for entry in self.servers:
            name, sep, address = entry.partition("=")
            if not sep:
                name, address = entry, entry
            descriptors.append((name.strip(), address.strip()))
        return descriptors
