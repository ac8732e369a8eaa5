from __future__ import annotations

import json
import logging
from functools import cache
from pathlib import Path

from pydantic import Field, TypeAdapter, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from domain.income import AddressConfig

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ARTIFACTS_DIR = PROJECT_ROOT / "artifacts"
DB_FILE = ARTIFACTS_DIR / "factoid_income.db"
ADDRESSES_FILE = ARTIFACTS_DIR / "addresses.json"

# First height with factoid transactions on mainnet.
DEFAULT_START_HEIGHT = 143400

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    pass


class AppSettings(BaseSettings):
    factomd_host: str = "api.factomd.net"
    factomd_port: int = 443
    factomd_path: str = "/v2"
    factomd_protocol: str = "https"
    factomd_timeout: float = 10.0
    retry_attempts: int = 2
    retry_backoff_seconds: float = 1

    start_height: int = DEFAULT_START_HEIGHT
    poll_interval_seconds: float = Field(default=60, ge=0)
    progress_interval: int = Field(default=1000, gt=0)

    db_file: Path = DB_FILE
    addresses_file: Path = ADDRESSES_FILE

    model_config = SettingsConfigDict(
        env_prefix="FACTOID_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@cache
def config() -> AppSettings:
    return AppSettings()


_ADDRESS_LIST = TypeAdapter(list[AddressConfig])


def load_addresses(path: Path) -> list[AddressConfig]:
    logger.info("Reading addresses from %s", path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Address file {path} does not exist") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Address file {path} is not valid JSON") from exc

    try:
        addresses = _ADDRESS_LIST.validate_python(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid address file {path}: {exc}") from exc

    if not addresses:
        raise ConfigurationError(f"Address file {path} must list at least one address")

    seen: set[str] = set()
    for entry in addresses:
        if entry.name in seen:
            raise ConfigurationError(f"Address name {entry.name!r} is used more than once")
        seen.add(entry.name)
    return addresses
