# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from errors import ConfigurationError

APP_NAME = "oai"
APP_VERSION = "1.0"

DEFAULT_PROVIDER = "OPENAI"
DEFAULT_ENDPOINT = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o"


def _default_data_dir(env: Mapping[str, str]) -> Path:
    raw = env.get("OPENAI_DATA_DIR") or env.get("XDG_CONFIG_HOME")
    if raw:
        return Path(raw)
    return Path.home() / ".openai"


@dataclass(frozen=True)
class Settings:
    provider: str
    endpoint: str
    api_key: str
    model: str
    data_dir: Path
    # Only set when the provider was picked explicitly through the environment.
    compatible_provider: Optional[str] = None
    suppress_provider_tips: bool = False
    timeout: Optional[float] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        compatible = env.get("OPENAI_COMPATIBLE_PROVIDER") or None
        provider = compatible or DEFAULT_PROVIDER
        endpoint = env.get(f"{provider}_API_ENDPOINT", DEFAULT_ENDPOINT)
        api_key = env.get(f"{provider}_API_KEY", "")
        model = env.get(f"{provider}_API_MODEL", DEFAULT_MODEL)

        # Checked in the same order the request needs them.
        for name, value in (("API_ENDPOINT", endpoint), ("API_KEY", api_key), ("API_MODEL", model)):
            if not value:
                raise ConfigurationError(f"Missing environment variable: {provider}_{name}.")

        timeout_raw = env.get("OAI_TIMEOUT")
        try:
            timeout = float(timeout_raw) if timeout_raw else None
        except ValueError:
            raise ConfigurationError(f"Invalid OAI_TIMEOUT value: {timeout_raw!r}.") from None

        return cls(
            provider=provider,
            endpoint=endpoint.rstrip("/"),
            api_key=api_key,
            model=model,
            data_dir=_default_data_dir(env),
            compatible_provider=compatible,
            suppress_provider_tips=env.get("SUPPRESS_PROVIDER_TIPS", "0") != "0",
            timeout=timeout,
        )

    def url_for(self, path: str) -> str:
        return f"{self.endpoint}/{path.lstrip('/')}"

    def masked_key(self) -> str:
        return f"{self.api_key[:3]}****"
