# Leadboard: configuration
# Override via leadboard.yaml or LEADBOARD_* environment variables.

import logging
import os
import yaml
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import List, Optional

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(os.environ.get("LEADBOARD_CONFIG", "leadboard.yaml"))

# Config attribute -> environment variable
ENV_OVERRIDES = {
    "backend": "LEADBOARD_BACKEND",
    "endpoint": "LEADBOARD_ENDPOINT",
    "project_id": "LEADBOARD_PROJECT_ID",
    "api_key": "LEADBOARD_API_KEY",
    "database_id": "LEADBOARD_DATABASE_ID",
    "columns_collection_id": "LEADBOARD_COLUMNS_COLLECTION_ID",
    "leads_collection_id": "LEADBOARD_LEADS_COLLECTION_ID",
    "customers_collection_id": "LEADBOARD_CUSTOMERS_COLLECTION_ID",
    "documents_bucket_id": "LEADBOARD_DOCUMENTS_BUCKET_ID",
    "sqlite_path": "LEADBOARD_SQLITE_PATH",
    "request_timeout": "LEADBOARD_REQUEST_TIMEOUT",
    "log_level": "LEADBOARD_LOG_LEVEL",
}


@dataclass
class Config:
    """Runtime configuration for the board client."""

    # "appwrite" talks to the remote backend, "sqlite" keeps documents locally
    backend: str = "appwrite"

    # Backend connection
    endpoint: str = "https://cloud.appwrite.io/v1"
    project_id: str = ""
    api_key: Optional[str] = None  # server key; needed for user listing and setup

    # Collections
    database_id: str = "crm_db"
    columns_collection_id: str = "columns"
    leads_collection_id: str = "leads"
    customers_collection_id: str = "customers"

    # Blob storage (allow-list and size cap are applied to the bucket by setup_backend.py)
    documents_bucket_id: str = "customer-documents"
    allowed_file_extensions: List[str] = field(default_factory=lambda: [
        "jpg", "jpeg", "png", "webp", "pdf",
    ])
    max_file_bytes: int = 10_000_000

    # Local backend
    sqlite_path: str = "~/.local/share/leadboard/documents.db"

    # Behavior
    request_timeout: float = 10.0
    list_limit: int = 1000
    log_level: str = "INFO"

    def collection_ids(self) -> dict:
        """Entity kind value -> collection id."""
        return {
            "column": self.columns_collection_id,
            "lead": self.leads_collection_id,
            "customer": self.customers_collection_id,
        }

    def resolve_paths(self):
        """Expand ~ in local paths."""
        self.sqlite_path = str(Path(self.sqlite_path).expanduser())

    def apply_env(self, environ=None):
        """Override fields from LEADBOARD_* environment variables."""
        environ = os.environ if environ is None else environ
        types = {f.name: f.type for f in fields(self)}
        for attr, var in ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            if types.get(attr) in (float, "float"):
                try:
                    setattr(self, attr, float(raw))
                except ValueError:
                    logger.warning(f"Ignoring {var}={raw!r}: not a number")
            else:
                setattr(self, attr, raw)

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "Config":
        """Load config from YAML file, falling back to defaults, then apply env overrides."""
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                cfg = cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
            except Exception as e:
                logger.warning(f"Could not read {cfg_path}, using defaults: {e}")
                cfg = cls()
        else:
            cfg = cls()
        cfg.apply_env(environ)
        cfg.resolve_paths()
        return cfg
