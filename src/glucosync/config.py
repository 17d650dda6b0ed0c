"""Process settings loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def app_group_suite_name(bundle_id: str | None) -> str | None:
    """Derive the shared app-group name from a consumer bundle identifier.

    ``org.nightscout.TEAMID.trio.watchkitapp.TrioWatchComplication`` maps to
    ``group.org.nightscout.TEAMID.trio.trio-app-group``.  The ``trio``
    component must sit at index 3 or later; anything else has no group.
    """
    if not bundle_id:
        return None
    components = bundle_id.split(".")
    if "trio" not in components:
        return None
    trio_index = components.index("trio")
    if trio_index < 3:
        return None
    base = ".".join(components[: trio_index + 1])
    return f"group.{base}.trio-app-group"


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "glucosync"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Shared store ---
    bundle_id: str | None = None
    store_dir: Path = Path(".glucosync")
    snapshot_key: str = "complicationData"

    # --- Engine tuning ---
    refresh_config_path: Path | None = None  # None = bundled refresh_config.yaml

    model_config = SettingsConfigDict(
        env_prefix="GLUCOSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def app_group(self) -> str | None:
        return app_group_suite_name(self.bundle_id)

    @property
    def shared_store_dir(self) -> Path:
        """Directory both processes use for the shared store."""
        return self.store_dir / (self.app_group or "standard")


@lru_cache
def get_settings() -> Settings:
    return Settings()
