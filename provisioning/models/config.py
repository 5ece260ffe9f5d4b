import os
import logging
from pathlib import Path
from typing import Optional, Union
import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger("config")

DEFAULT_CONFIG_PATH = Path("config.yaml")


class RetrySettings(BaseModel):
    attempts: int = Field(3, description="Attempts per outbound call.")
    base_delay: float = Field(1.0, description="Seconds; doubled after every failed attempt.")
    rate_limit_floor: float = Field(15.0, description="Minimum wait after a 429, seconds.")
    login_attempts: int = 6
    login_base_delay: float = 2.0


class PortalSettings(BaseModel):
    base_url: str = "https://admin.geonet.cl"
    login_path: str = "/accounts/login/"
    post_login_path: str = "/panel/"
    username: Optional[str] = None
    password: Optional[str] = None
    cookie_file: Optional[str] = Field(None, description="Netscape cookies.txt used to seed the session.")
    session_max_age_minutes: float = 25.0
    request_timeout: float = Field(45.0, description="Per-attempt timeout, seconds.")

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class TicketingSettings(BaseModel):
    api_url: str = "https://api.wisphub.app"
    api_key: Optional[str] = None
    request_timeout: float = 30.0


class OltSettings(BaseModel):
    api_url: Optional[str] = Field(None, description="SmartOLT instance, e.g. https://isp.smartolt.com")
    api_key: Optional[str] = None
    identity: Optional[str] = Field(None, description="Web login, used when the API key is refused.")
    password: Optional[str] = None
    request_timeout: float = 15.0
    list_timeout: float = Field(30.0, description="The ODB listing can be large.")
    cache_ttl_seconds: float = Field(300.0, description="How long the ODB listing is reused.")
    session_ttl_seconds: float = Field(600.0, description="How long a web-login cookie is reused.")

    @property
    def has_web_login(self) -> bool:
        return bool(self.identity and self.password)


class Settings(BaseModel):
    portal: PortalSettings = Field(default_factory=PortalSettings)
    ticketing: TicketingSettings = Field(default_factory=TicketingSettings)
    olt: OltSettings = Field(default_factory=OltSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    store_dir: str = Field("data/store", description="Directory of the JSON record store.")
    corrections_path: Optional[str] = Field(None, description="Override for the bundled correction tables.")
    workflow_timeout: float = Field(180.0, description="Upper bound for one workflow call, seconds.")


# env var -> (section, key). First variable set wins.
ENV_OVERRIDES = [
    ("GEONET_BASE_URL", "portal", "base_url"),
    ("GEONET_USER", "portal", "username"),
    ("ADMIN_LOGIN", "portal", "username"),
    ("GEONET_PASS", "portal", "password"),
    ("ADMIN_PASSWORD", "portal", "password"),
    ("GEONET_COOKIE_FILE", "portal", "cookie_file"),
    ("GEONET_SESSION_MAX_AGE_MINUTES", "portal", "session_max_age_minutes"),
    ("WISPHUB_API_URL", "ticketing", "api_url"),
    ("WISPHUB_API_KEY", "ticketing", "api_key"),
    ("SMARTOLT_BASE_URL", "olt", "api_url"),
    ("SMARTOLT_API_KEY", "olt", "api_key"),
    ("SMARTOLT_IDENTITY", "olt", "identity"),
    ("SMARTOLT_USERNAME", "olt", "identity"),
    ("SMARTOLT_EMAIL", "olt", "identity"),
    ("SMARTOLT_PASSWORD", "olt", "password"),
    ("PROVISIONING_STORE_DIR", None, "store_dir"),
]


def _apply_env(raw: dict, environ) -> dict:
    applied = set()
    for var, section, key in ENV_OVERRIDES:
        value = environ.get(var)
        if not value or (section, key) in applied:
            continue
        target = raw.setdefault(section, {}) if section else raw
        if target is None:
            target = raw[section] = {}
        target[key] = value
        applied.add((section, key))
    return raw


def load_settings(path: Union[str, Path, None] = None, environ=None) -> Settings:
    """
    Load settings from YAML (explicit path, $PROVISIONING_CONFIG or ./config.yaml)
    and apply environment overrides. A missing file means defaults.
    """
    environ = os.environ if environ is None else environ
    config_path = Path(path or environ.get("PROVISIONING_CONFIG") or DEFAULT_CONFIG_PATH)

    raw = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        logger.debug(f"Loaded settings from {config_path}")
    else:
        logger.debug(f"No config file at {config_path}, using defaults")

    return Settings.model_validate(_apply_env(raw, environ))
