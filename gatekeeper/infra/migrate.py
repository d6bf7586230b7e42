from __future__ import annotations

import os
from pathlib import Path

from alembic import command
from alembic.config import Config

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def alembic_config(database_url: str | None = None) -> Config:
    config = Config(os.getenv("ALEMBIC_CONFIG", str(ALEMBIC_INI)))
    if database_url:
        config.attributes["database_url"] = database_url
    return config


def run_upgrade_head(database_url: str | None = None) -> None:
    command.upgrade(alembic_config(database_url), "head")


def run_downgrade(revision: str, database_url: str | None = None) -> None:
    command.downgrade(alembic_config(database_url), revision)


if __name__ == "__main__":
    run_upgrade_head()
