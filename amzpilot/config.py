"""
Configuration for AmzPilot.

Settings come from a JSON file (default ``~/.amzpilot/config.json``, override
with ``AMZPILOT_CONFIG``). Secrets are overlaid from environment variables so
they never have to live in the file:

    AMZPILOT_WP_URL, AMZPILOT_WP_USER, AMZPILOT_WP_APP_PASSWORD,
    AMZPILOT_AI_PROVIDER, AMZPILOT_AI_API_KEY, AMZPILOT_AI_MODEL,
    AMZPILOT_AMAZON_TAG

A ``.env`` file in the working directory is loaded first.

Usage:
    from amzpilot.config import load_config
    config = load_config()
    print(config.api_url, config.is_configured)
"""

from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from amzpilot.ai_providers import DEFAULT_MODELS, AIProvider
from amzpilot.errors import ConfigError

logger = logging.getLogger("config")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DATA_DIR = Path.home() / ".amzpilot"
DEFAULT_CONFIG_PATH = DATA_DIR / "config.json"
DEFAULT_CACHE_PATH = DATA_DIR / "cache.json"

DEFAULT_AUTO_PUBLISH_THRESHOLD = 85
DEFAULT_CONCURRENCY_LIMIT = 3

# "{url}" is replaced verbatim, "{quoted}" with the percent-encoded URL.
DEFAULT_RELAYS: List[str] = [
    "{url}",
    "https://corsproxy.io/?{quoted}",
    "https://api.allorigins.win/raw?url={quoted}",
    "https://thingproxy.freeboard.io/fetch/{url}",
]

ENV_OVERRIDES: Dict[str, str] = {
    "AMZPILOT_WP_URL": "wp_url",
    "AMZPILOT_WP_USER": "wp_user",
    "AMZPILOT_WP_APP_PASSWORD": "wp_app_password",
    "AMZPILOT_AI_PROVIDER": "ai_provider",
    "AMZPILOT_AI_API_KEY": "ai_api_key",
    "AMZPILOT_AI_MODEL": "ai_model",
    "AMZPILOT_AMAZON_TAG": "amazon_tag",
}


# ---------------------------------------------------------------------------
# PilotConfig
# ---------------------------------------------------------------------------


@dataclass
class PilotConfig:
    """Everything the pipeline needs to talk to WordPress, Amazon and the AI provider."""

    wp_url: str = ""
    wp_user: str = ""
    wp_app_password: str = ""
    amazon_tag: str = ""
    amazon_region: str = "us-east-1"
    auto_publish_threshold: int = DEFAULT_AUTO_PUBLISH_THRESHOLD
    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT
    enable_schema: bool = True
    enable_sticky_bar: bool = True
    ai_provider: AIProvider = AIProvider.GEMINI
    ai_api_key: str = ""
    ai_model: str = ""
    origin: str = "this host"
    cache_path: Path = DEFAULT_CACHE_PATH
    relays: List[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))

    def __post_init__(self) -> None:
        if not isinstance(self.ai_provider, AIProvider):
            try:
                self.ai_provider = AIProvider(str(self.ai_provider).lower())
            except ValueError:
                raise ConfigError(
                    f"Unknown AI provider {self.ai_provider!r}; "
                    f"expected one of {', '.join(p.value for p in AIProvider)}"
                ) from None
        if not self.ai_model:
            self.ai_model = DEFAULT_MODELS[self.ai_provider]
        self.auto_publish_threshold = max(0, min(100, int(self.auto_publish_threshold)))
        self.concurrency_limit = max(1, int(self.concurrency_limit))
        self.cache_path = Path(self.cache_path).expanduser()

    @property
    def site_url(self) -> str:
        """Normalized site root: https:// prefixed, no trailing slash."""
        url = self.wp_url.strip().rstrip("/")
        if url and not url.startswith("http"):
            url = "https://" + url
        return url

    @property
    def base_url(self) -> str:
        """WP REST API root URL."""
        return f"{self.site_url}/wp-json"

    @property
    def api_url(self) -> str:
        """WP REST API v2 base URL."""
        return f"{self.site_url}/wp-json/wp/v2"

    @property
    def auth_header(self) -> str:
        """Base64-encoded Basic auth header value."""
        if not self.wp_user or not self.wp_app_password:
            return ""
        credentials = f"{self.wp_user}:{self.wp_app_password}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"

    @property
    def is_configured(self) -> bool:
        """Whether WordPress URL and credentials are all present."""
        return bool(self.wp_url and self.wp_user and self.wp_app_password)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["ai_provider"] = self.ai_provider.value
        d["cache_path"] = str(self.cache_path)
        d.pop("wp_app_password", None)
        d.pop("ai_api_key", None)
        return d

    def __repr__(self) -> str:
        configured = "configured" if self.is_configured else "no-creds"
        return f"PilotConfig({self.site_url!r}, {self.ai_provider.value}, {configured})"


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def load_config(path: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> PilotConfig:
    """
    Build a PilotConfig from the settings file plus environment overrides.

    Parameters
    ----------
    path : Path, optional
        Settings JSON file. Defaults to ``AMZPILOT_CONFIG`` or
        ``~/.amzpilot/config.json``. A missing file is not an error.
    env : dict, optional
        Environment mapping; defaults to ``os.environ`` after loading ``.env``.

    Raises
    ------
    ConfigError
        If the file is not valid JSON or a value is invalid.
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    config_path = Path(path or env.get("AMZPILOT_CONFIG") or DEFAULT_CONFIG_PATH).expanduser()
    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid settings file {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {config_path} must contain a JSON object")
    else:
        logger.debug("Settings file %s not found, using defaults", config_path)

    for env_var, key in ENV_OVERRIDES.items():
        value = env.get(env_var)
        if value:
            data[key] = value

    valid = {f for f in PilotConfig.__dataclass_fields__}
    unknown = sorted(set(data) - valid)
    if unknown:
        logger.warning("Ignoring unknown settings: %s", ", ".join(unknown))

    try:
        config = PilotConfig(**{k: v for k, v in data.items() if k in valid})
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc

    logger.debug("Loaded %r from %s", config, config_path)
    return config
