#!/usr/bin/env python3
"""
Wait for the database, run migrations with the app's DATABASE_URL, then exec uvicorn.
"""
import os
import sys

from consultpay.core.config import settings

# 1) Wait for Postgres (sqlite needs no waiting)
if settings.DATABASE_URL.startswith("postgresql"):
    import wait_for_db  # noqa: F401

# 2) Run migrations using the same settings as the app
from alembic.config import Config
from alembic import command

alembic_cfg = Config(os.path.join(os.path.dirname(os.path.abspath(__file__)), "alembic.ini"))
alembic_cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
command.upgrade(alembic_cfg, "head")

# 3) Start uvicorn (replace current process)
os.execv(
    sys.executable,
    [sys.executable, "-m", "uvicorn", "consultpay.main:app", "--host", "0.0.0.0", "--port", os.getenv("PORT", "8000")],
)
