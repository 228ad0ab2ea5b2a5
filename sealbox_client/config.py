"""
Client configuration.

Defaults suit a relay running locally; each field can be overridden from the
environment.
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, field_validator


DEFAULT_SERVER_URL = "http://localhost:8080"


class ClientConfig(BaseModel):
    """Settings for talking to the relay"""
    server_url: str = DEFAULT_SERVER_URL
    api_prefix: str = "/api"
    timeout: float = 30.0
    log_level: str = "WARNING"

    @field_validator("server_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def base_url(self) -> str:
        """Root URL every API path is relative to"""
        return f"{self.server_url}{self.api_prefix}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ClientConfig':
        """
        Build a config from SEALBOX_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ
        """
        environ = os.environ if environ is None else environ
        values = {}
        if "SEALBOX_SERVER_URL" in environ:
            values["server_url"] = environ["SEALBOX_SERVER_URL"]
        if "SEALBOX_TIMEOUT" in environ:
            values["timeout"] = environ["SEALBOX_TIMEOUT"]
        if "SEALBOX_LOG_LEVEL" in environ:
            values["log_level"] = environ["SEALBOX_LOG_LEVEL"]
        return cls(**values)
