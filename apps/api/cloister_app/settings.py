from __future__ import annotations

from functools import lru_cache
import json
from pathlib import Path
from typing import Any

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SETTINGS_FILE = Path("~/.cloister/settings.json")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        env_prefix="CLOISTER_",
        env_file=(".env", "apps/api/.env"),
        env_file_encoding="utf-8",
    )

    engine_name: str = "llama-cpp"
    model_name: str = "llama3.2:3b-gguf-q4-km"
    embedding_model: str | None = None
    logging: bool = False
    base_uri: str = "http://127.0.0.1:39281"

    data_dir: str = "~/.cloister"
    groups_dir: str | None = None
    database_url: str | None = None

    service_executable: str = "inference-server"
    service_start_args: list[str] = []
    service_installer_url: str | None = None
    service_installer_args: list[str] = ["--silent"]
    service_settle_seconds: float = 5.0
    model_install_poll_seconds: float = 2.0
    model_install_timeout_seconds: float = 1800.0
    native_component_source: str | None = None
    native_component_target: str | None = None
    request_timeout_seconds: float | None = None

    default_group: str = "Default"
    default_part_size: int = 1024
    max_tokens: int = 2048
    temperature: float = 0.7
    top_p: float = 0.95

    worker_poll_seconds: float = 2.0
    worker_stale_minutes: int = 15
    worker_max_attempts: int = 3

    @model_validator(mode="after")
    def _derive_paths(self) -> Settings:
        derived = self.derived_paths()
        if self.groups_dir is None:
            self.groups_dir = derived["groups_dir"]
        if self.database_url is None:
            self.database_url = derived["database_url"]
        return self

    def derived_paths(self) -> dict[str, str]:
        data_dir = Path(self.data_dir).expanduser()
        return {
            "groups_dir": str(data_dir / "rag"),
            "database_url": f"sqlite:///{data_dir / 'cloister.db'}",
        }

    def persisted_values(self) -> dict[str, Any]:
        """Values for the settings file.

        Paths that only follow ``data_dir`` are left out so they move with it
        when ``data_dir`` changes.
        """
        values = self.model_dump(mode="json")
        for name, value in self.derived_paths().items():
            if values.get(name) == value:
                del values[name]
        return values

    @property
    def embedding_model_name(self) -> str:
        return self.embedding_model or self.model_name

    @property
    def base_url(self) -> str:
        return self.base_uri.rstrip("/")


def load_settings(path: str | Path | None = None) -> Settings:
    settings_path = Path(path or DEFAULT_SETTINGS_FILE).expanduser()
    if not settings_path.is_file():
        return Settings()
    raw = json.loads(settings_path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Settings file {settings_path} must contain a JSON object")
    return Settings(**raw)


def save_settings(settings: Settings, path: str | Path | None = None) -> Path:
    settings_path = Path(path or DEFAULT_SETTINGS_FILE).expanduser()
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings_path.write_text(json.dumps(settings.persisted_values(), indent=2), encoding="utf-8")
    return settings_path


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
