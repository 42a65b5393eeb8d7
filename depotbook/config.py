from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


DEFAULT_DATABASE_URL = "sqlite:///./data/depotbook.db"

# env var -> config field
_ENV_OVERRIDES = {
    "DATABASE_URL": "database_url",
    "DEPOTBOOK_LOG_LEVEL": "log_level",
    "DEPOTBOOK_MIN_PASSWORD_LENGTH": "min_password_length",
    "DEPOTBOOK_BOOKING_RETRIES": "booking_retries",
    "DEPOTBOOK_DEFAULT_VENDOR": "default_vendor",
}


class BookkeepingConfig(BaseModel):
    database_url: str = Field(default=DEFAULT_DATABASE_URL, description="SQLAlchemy database URL")
    log_level: str = Field(default="INFO", description="Root log level for configure_logging()")
    min_password_length: int = Field(default=8, ge=1)
    # Whole-ticket retries after a unique-constraint conflict on the position row.
    booking_retries: int = Field(default=3, ge=1)
    default_vendor: str = Field(default="IEX", description="Vendor seeded with the reference data")


def _candidate_paths() -> list[Path]:
    paths = [Path("depotbook.yaml")]
    home = Path(os.path.expanduser("~"))
    paths.append(home / ".depotbook" / "depotbook.yaml")
    return paths


def _env_values() -> dict[str, str]:
    out: dict[str, str] = {}
    for env_name, field in _ENV_OVERRIDES.items():
        v = os.environ.get(env_name)
        if v is not None and v.strip():
            out[field] = v.strip()
    return out


def load_config() -> tuple[BookkeepingConfig, Optional[str]]:
    """
    Load bookkeeping config.

    Per field, first match wins:
      - environment (after loading `.env` via python-dotenv)
      - ./depotbook.yaml or ~/.depotbook/depotbook.yaml (first file found)
      - defaults
    Returns the config and the YAML path used (None if no file was found).
    """
    load_dotenv()
    data: dict = {}
    source: Optional[str] = None
    for p in _candidate_paths():
        if p.exists():
            data = yaml.safe_load(p.read_text()) or {}
            source = str(p)
            break
    data.update(_env_values())
    return BookkeepingConfig.model_validate(data), source


_CONFIG: BookkeepingConfig | None = None


def get_config() -> BookkeepingConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG, _ = load_config()
    return _CONFIG


def configure_logging(level: str | None = None) -> None:
    lvl = (level or get_config().log_level).upper()
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
