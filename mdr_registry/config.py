"""Runtime configuration.

Environment variables (all optional):
  - MDR_DB_PATH: SQLite database file (default ``mdr.sqlite``)
  - MDR_LOG_LEVEL: logging level name (default ``WARNING``)
  - MDR_ENFORCE_ROLES: ``true`` to check every call against the role directory
  - MDR_ATTRIBUTE_SCHEMA: JSON file with attribute definitions applied at startup
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_TRUE = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RegistryConfig:
    db_path: str = "mdr.sqlite"
    log_level: str = "WARNING"
    enforce_roles: bool = False
    attribute_schema_path: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RegistryConfig":
        env = os.environ if environ is None else environ
        return cls(
            db_path=env.get("MDR_DB_PATH", cls.db_path),
            log_level=env.get("MDR_LOG_LEVEL", cls.log_level).upper(),
            enforce_roles=env.get("MDR_ENFORCE_ROLES", "false").lower() in _TRUE,
            attribute_schema_path=env.get("MDR_ATTRIBUTE_SCHEMA") or None,
        )

    def with_overrides(self, **changes) -> "RegistryConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def configure_logging(level: str = "WARNING") -> None:
    root = logging.getLogger("mdr_registry")
    root.setLevel(getattr(logging, str(level).upper(), logging.WARNING))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
