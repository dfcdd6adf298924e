"""Settings loader for Cellmatrix."""

from pathlib import Path
from typing import Any

import tomllib
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = Path(__file__).parent / "data"
DEFAULT_SUBSET_PATH = str(DATA_DIR / "featured_cells.txt")
DEFAULT_DISAMBIGUATION_PATH = str(DATA_DIR / "cell_name_disambiguation.txt")


# (section, key) in config.toml -> Settings field
_TOML_FIELDS: dict[tuple[str, str], str] = {
    ("app", "env"): "env",
    ("database", "url"): "database_url",
    ("importer", "bulk_load"): "importer_bulk_load",
    ("alterations", "page_size"): "alteration_page_size",
    ("reference", "subset_path"): "reference_subset_path",
    ("reference", "disambiguation_path"): "reference_disambiguation_path",
    ("reference", "subset_min_entities"): "reference_subset_min_entities",
    ("logging", "enabled"): "logging_enabled",
    ("logging", "level"): "logging_level",
    ("logging", "file_path"): "logging_file_path",
    ("logging", "max_bytes"): "logging_max_bytes",
    ("logging", "backup_count"): "logging_backup_count",
}


def _handler_level(value: Any, overall: str) -> str:
    # Handlers accept a level name or a boolean toggle
    if isinstance(value, str):
        return value.upper()
    if isinstance(value, bool):
        return overall if value else "NONE"
    return overall


def _toml_settings_source() -> dict[str, Any]:
    """Settings read from ./config.toml.

    This source has LOWER priority than env/.env so those can override TOML.
    Keys that are absent or empty fall through to the field defaults.
    """
    cfg_path = Path("config.toml")
    if not cfg_path.exists():
        return {}
    with cfg_path.open("rb") as f:
        t = tomllib.load(f)
    out: dict[str, Any] = {}
    for (section, key), name in _TOML_FIELDS.items():
        value = (t.get(section) or {}).get(key)
        if value is not None and value != "":
            out[name] = value
    log_cfg = t.get("logging") or {}
    overall = str(out.get("logging_level", "INFO"))
    out["logging_console"] = _handler_level(log_cfg.get("console"), overall)
    out["logging_file"] = _handler_level(log_cfg.get("to_file"), overall)
    return out


class Settings(BaseSettings):
    env: str = Field(default="dev")
    database_url: str = Field(default="sqlite+aiosqlite:///./cellmatrix.sqlite3")

    # --- Import behavior ---
    # Buffered bulk writes for first-time loads; immediate writes otherwise
    importer_bulk_load: bool = False
    alteration_page_size: int = 3000

    # --- Reference lists ---
    reference_subset_path: str = DEFAULT_SUBSET_PATH
    reference_disambiguation_path: str = DEFAULT_DISAMBIGUATION_PATH
    # Subset list only applies to full catalogs
    reference_subset_min_entities: int = 10000

    # --- Logging ---
    logging_enabled: bool = True
    logging_level: str = "INFO"
    logging_console: str = "INFO"
    logging_file: str = "INFO"
    logging_file_path: str = "logs/cellmatrix.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Precedence (highest to lowest):
        # 1) init_settings (explicit overrides in code/tests)
        # 2) dotenv (.env in cwd)
        # 3) env_settings (OS env)
        # 4) TOML (config.toml)
        # 5) file_secret_settings
        return (
            init_settings,
            dotenv_settings,
            env_settings,
            _toml_settings_source,
            file_secret_settings,
        )


def load_settings() -> Settings:
    return Settings()
