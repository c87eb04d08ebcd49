"""Centralized helpers for resolving the application's data directory."""
from __future__ import annotations

import logging
import os
from pathlib import Path

from werkzeug.utils import secure_filename

LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent
DATA_ROOT = Path(os.getenv("GARAGELEDGER_DATA_DIR") or APP_ROOT / "data")
UPLOADS_DIRNAME = "uploads"


def ensure_data_root() -> Path:
    """Return the canonical data root, creating it as needed."""
    DATA_ROOT.mkdir(parents=True, exist_ok=True)
    return DATA_ROOT


def tenant_upload_dir(organization_id: str, category: str) -> Path:
    """Return (and create) the upload directory for one tenant and category.

    Both path segments pass through ``secure_filename`` so a crafted
    organization id can never escape the uploads tree.
    """
    org_segment = secure_filename(str(organization_id))
    category_segment = secure_filename(category)
    if not org_segment or not category_segment:
        raise ValueError(f"Invalid upload location {organization_id!r}/{category!r}")

    target = ensure_data_root() / UPLOADS_DIRNAME / org_segment / category_segment
    target.mkdir(parents=True, exist_ok=True)
    return target
