"""
Process-wide configuration for the relay.

Settings are read from the environment exactly once at startup and then passed
explicitly into every component. The model is frozen so that no session or
request can mutate shared configuration.
"""

import os
from pathlib import Path
from typing import List, Mapping, Optional

import dotenv
from pydantic import BaseModel, ConfigDict, Field

from convai_relay.config.constants import DEFAULT_BASE_HOST, DEFAULT_MODEL_ID

# Environment variable name for every settings field
ENV_VARS = {
    "api_key": "ELEVENLABS_API_KEY",
    "voice_id": "ELEVENLABS_VOICE_ID",
    "agent_id": "ELEVENLABS_AGENT_ID",
    "base_host": "ELEVENLABS_BASE",
    "model_id": "ELEVENLABS_MODEL",
    "webhook_url": "ELEVENLABS_CONVAI_WEBHOOK",
    "webhook_secret": "ELEVENLABS_WEBHOOK_SECRET",
    "public_base_url": "PUBLIC_BASE_URL",
    "host": "HOST",
    "port": "PORT",
    "projects_dir": "PROJECTS_DIR",
    "output_dir": "OUTPUT_DIR",
    "log_level": "LOG_LEVEL",
    "env": "ENV",
    "http_timeout": "RELAY_HTTP_TIMEOUT",
    "handshake_timeout": "RELAY_HANDSHAKE_TIMEOUT",
    "keepalive_interval": "RELAY_KEEPALIVE_INTERVAL",
    "idle_timeout": "RELAY_IDLE_TIMEOUT",
    "idle_check_interval": "RELAY_IDLE_CHECK_INTERVAL",
}


class Settings(BaseModel):
    """Immutable relay configuration."""

    model_config = ConfigDict(frozen=True)

    api_key: str = ""
    voice_id: str = ""
    agent_id: str = ""
    base_host: str = DEFAULT_BASE_HOST
    model_id: str = DEFAULT_MODEL_ID
    webhook_url: str = ""
    webhook_secret: str = ""
    public_base_url: str = ""

    host: str = "0.0.0.0"
    port: int = 8080
    projects_dir: Path = Path("projects")
    output_dir: Path = Path("out")
    log_level: str = "INFO"
    env: str = "production"

    http_timeout: float = Field(8.0, gt=0)
    handshake_timeout: float = Field(8.0, gt=0)
    keepalive_interval: float = Field(20.0, gt=0)
    idle_timeout: float = Field(120.0, gt=0)
    idle_check_interval: float = Field(10.0, gt=0)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        env_file: Optional[Path] = None,
    ) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ
            env_file: Optional .env file loaded before reading os.environ

        Returns:
            Settings: The frozen configuration

        Raises:
            pydantic.ValidationError: If a numeric variable cannot be parsed
        """
        if environ is None:
            env_path = env_file or Path(".") / ".env"
            if env_path.exists():
                dotenv.load_dotenv(env_path)
            environ = os.environ

        values = {}
        for field, var in ENV_VARS.items():
            raw = environ.get(var)
            if raw is not None and raw.strip() != "":
                values[field] = raw.strip()
        return cls(**values)

    @property
    def http_base(self) -> str:
        """HTTPS base URL of the provider REST API."""
        return f"https://{self.base_host}"

    @property
    def reload(self) -> bool:
        """Whether uvicorn should reload on code changes (ENV=development)."""
        return self.env.lower() == "development"

    def missing(self, *fields: str) -> List[str]:
        """Return the environment variable names of the empty fields among `fields`."""
        return [ENV_VARS[field] for field in fields if not getattr(self, field)]
