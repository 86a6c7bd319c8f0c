from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .domain import StoreBackend


def load_env_file(repo_root: Path) -> None:
    env_path = repo_root / "config" / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)


class Settings(BaseModel):
    store: StoreBackend = StoreBackend(kind="inmemory")
    ddb_table_name: str = ""
    judge_delay_seconds: float = Field(default=2.0, ge=0)
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, v: object) -> str:
        if not isinstance(v, str):
            raise TypeError("log_level must be a string")
        return v.strip().upper() or "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        kind = os.environ.get("STORE_BACKEND", "inmemory").strip().lower()
        origins = os.environ.get("CORS_ORIGINS", "*")
        settings = cls(
            store=StoreBackend(kind=kind),
            ddb_table_name=os.environ.get("DDB_TABLE_NAME", "").strip(),
            judge_delay_seconds=os.environ.get("JUDGE_DELAY_SECONDS", "2.0"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )
        if settings.store.kind == "dynamodb" and not settings.ddb_table_name:
            raise RuntimeError("DDB_TABLE_NAME is required for dynamodb store")
        return settings
