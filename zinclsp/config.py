"""Client settings for the Zinc language client."""

import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_SERVER_COMMAND = "zinc_lsp"
SERVER_PATH_ENV = "ZINC_SERVER_PATH"


class ClientSettings(BaseModel):
    """Settings consumed by the language client core.

    Everything outside of the server path (keybindings, menus) belongs to the
    embedding editor and is not modelled here.
    """

    server_path: Optional[str] = None
    server_args: List[str] = Field(default_factory=list)

    request_timeout: float = Field(default=10.0, gt=0)
    initialize_timeout: float = Field(default=30.0, gt=0)
    shutdown_grace_period: float = Field(default=2.0, gt=0)

    # Restart policy
    crash_limit: int = Field(default=3, ge=1)
    crash_window: float = Field(default=180.0, gt=0)
    backoff_base: float = Field(default=0.5, gt=0)
    backoff_max: float = Field(default=10.0, gt=0)

    notify_cancel: bool = True
    incremental_sync: bool = True

    trace: str = "off"
    initialization_options: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("trace")
    @classmethod
    def _check_trace(cls, value: str) -> str:
        if value not in ("off", "messages", "verbose"):
            raise ValueError(f"trace must be one of off, messages, verbose (got {value!r})")
        return value

    @classmethod
    def from_env(cls, **overrides: Any) -> "ClientSettings":
        """Build settings, taking the server path from the environment if set.

        Args:
            **overrides: Explicit values, which win over the environment.

        Returns:
            The settings instance.
        """
        values: Dict[str, Any] = {}
        env_path = os.environ.get(SERVER_PATH_ENV)
        if env_path:
            values["server_path"] = env_path
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def resolved_command(self, default: str = DEFAULT_SERVER_COMMAND) -> str:
        """Get the executable to launch, falling back to the default name."""
        if self.server_path and self.server_path.strip():
            return self.server_path.strip()
        return default
