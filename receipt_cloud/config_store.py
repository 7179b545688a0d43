"""
Persistence of the single shared app configuration record.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from receipt_cloud.db import TableGateway, eq, utc_now_iso
from receipt_cloud.errors import GatewayError
from receipt_cloud.schemas import AppConfig

logger = logging.getLogger(__name__)

CONFIG_TABLE = "app_configs"
CONFIG_ID = "default-config"


class ConfigStore:
    """Get/set of the singleton configuration row."""

    def __init__(self, db: TableGateway):
        self.db = db

    def save_config(self, config: AppConfig) -> bool:
        """Overwrite the stored configuration wholesale."""
        logger.info("Saving app config %s", CONFIG_ID)
        row = config.model_dump(
            mode="json", exclude={"id", "created_at", "updated_at"}
        )
        row["logo_url"] = row.get("logo_url") or ""
        row["seal_url"] = row.get("seal_url") or ""
        row["id"] = CONFIG_ID
        row["updated_at"] = utc_now_iso()
        try:
            self.db.upsert(CONFIG_TABLE, row, conflict_key="id")
        except GatewayError as exc:
            logger.error("Saving app config failed: %s", exc.as_dict())
            return False
        logger.info("App config saved")
        return True

    def load_config(self) -> Optional[AppConfig]:
        """Return the stored configuration, or None when nothing was saved yet."""
        try:
            rows = self.db.select(CONFIG_TABLE, [eq("id", CONFIG_ID)], limit=1)
        except GatewayError as exc:
            logger.error("Loading app config failed: %s", exc.as_dict())
            return None
        if not rows:
            logger.info("No app config stored yet; caller should use defaults")
            return None
        try:
            return AppConfig.model_validate(rows[0])
        except ValidationError as exc:
            logger.error("Stored app config is malformed: %s", exc)
            return None
