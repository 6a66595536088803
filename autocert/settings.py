"""
Persistent autocert settings.

Settings are read from a JSON file in the config directory and can be
overridden per field by AUTOCERT_* environment variables. Durations accept
plain seconds or Go-style strings such as "15s", "1m30s" or "500ms".
"""
import json
import logging
import os
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, field_validator

from .acme_client import LETSENCRYPT_PRODUCTION, LETSENCRYPT_STAGING, KeyType
from .addresses import split_host_port
from .tls_config import TLSPreset


logger = logging.getLogger(__name__)

# Config file location
CONFIG_DIR = Path(os.environ.get("AUTOCERT_CONFIG_DIR", "/config"))
SETTINGS_FILE = CONFIG_DIR / "autocert.json"

ENV_PREFIX = "AUTOCERT_"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_EMAIL = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")


def parse_duration(value) -> float:
    """
    Convert a duration to seconds.

    Raises:
        ValueError: The value is not a number or a duration string.
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(number + unit for number, unit in parts) != text:
        raise ValueError(f"invalid duration: {value!r}")
    return sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)


class AutoCertSettings(BaseModel):
    """Server and ACME configuration."""

    # Listen addresses
    http_addr: str = ":80"
    https_addr: str = ":443"

    # Timeouts in seconds
    read_timeout: float = 15.0
    write_timeout: float = 15.0
    idle_timeout: float = 60.0
    shutdown_timeout: float = 30.0
    max_header_bytes: int = 1 << 20

    tls_preset: TLSPreset = TLSPreset.DEFAULT

    # Where certificates (and pending challenge tokens) are stored
    cert_dir: str = str(CONFIG_DIR / "certs")

    # ACME settings
    email: str = ""
    ca_directory_url: str = LETSENCRYPT_PRODUCTION
    use_staging: bool = False
    key_type: KeyType = KeyType.RSA2048
    http01_proxy_header: str = ""

    # Retries for background issuance (serve --issue)
    max_retries: int = 3
    retry_backoff: float = 5.0

    log_level: str = "INFO"

    @field_validator("http_addr", "https_addr")
    @classmethod
    def validate_addr(cls, v: str) -> str:
        split_host_port(v)
        return v.strip()

    @field_validator("read_timeout", "write_timeout", "idle_timeout", "shutdown_timeout", "retry_backoff", mode="before")
    @classmethod
    def validate_duration(cls, v) -> float:
        seconds = parse_duration(v)
        if seconds < 0:
            raise ValueError("duration must not be negative")
        return seconds

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_retries must be at least 1")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Normalize the contact email; empty means not configured."""
        v = v.strip().lower()
        if v and not _EMAIL.fullmatch(v):
            raise ValueError(f"invalid email address: {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v!r}")
        return level

    @property
    def directory_url(self) -> str:
        """CA directory to use, honouring the staging switch."""
        return LETSENCRYPT_STAGING if self.use_staging else self.ca_directory_url

    @property
    def challenge_dir(self) -> Path:
        return Path(self.cert_dir) / ".challenges"


# In-memory cache of settings
_cached_settings: Optional[AutoCertSettings] = None


def _env_overrides() -> dict:
    overrides = {}
    for name in AutoCertSettings.model_fields:
        value = os.environ.get(ENV_PREFIX + name.upper())
        if value is not None:
            overrides[name] = value
    return overrides


def load_settings(path: Optional[Path] = None) -> AutoCertSettings:
    """
    Load settings from file, then apply environment overrides.

    An unreadable file is logged and ignored. Invalid environment values
    raise, since silently ignoring them would start the server with the wrong
    configuration.

    Raises:
        ValidationError: A value failed validation.
    """
    global _cached_settings

    if _cached_settings is not None and path is None:
        return _cached_settings

    settings_file = path or SETTINGS_FILE
    data: dict = {}
    if settings_file.exists():
        try:
            loaded = json.loads(settings_file.read_text())
        except (OSError, ValueError) as e:
            logger.error("[SETTINGS] Failed to load settings from %s: %s", settings_file, e)
        else:
            if isinstance(loaded, dict):
                data = loaded
                logger.info("[SETTINGS] Loaded settings from %s", settings_file)
            else:
                logger.error(
                    "[SETTINGS] Failed to load settings from %s: expected a JSON object, got %s",
                    settings_file, type(loaded).__name__,
                )
    else:
        logger.info("[SETTINGS] No settings file at %s, using defaults", settings_file)

    data.update(_env_overrides())
    settings = AutoCertSettings(**data)
    if path is None:
        _cached_settings = settings
    return settings


def save_settings(settings: AutoCertSettings, path: Optional[Path] = None) -> bool:
    """Save settings to file. Returns True if successful."""
    global _cached_settings

    settings_file = path or SETTINGS_FILE
    try:
        settings_file.parent.mkdir(parents=True, exist_ok=True)
        settings_file.write_text(settings.model_dump_json(indent=2))
    except (PermissionError, OSError) as e:
        logger.error("[SETTINGS] Failed to save settings to %s: %s", settings_file, e)
        return False

    if path is None:
        _cached_settings = settings
    logger.info("[SETTINGS] Saved settings to %s", settings_file)
    return True


def get_settings() -> AutoCertSettings:
    """Get current settings (cached)."""
    return load_settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (for testing or after external changes)."""
    global _cached_settings
    _cached_settings = None
