import os
import time
from urllib.parse import urlparse

import psycopg2

from consultpay.core.config import settings

# SQLAlchemy URL may carry a driver suffix, psycopg2 wants the plain scheme
url = settings.DATABASE_URL.replace("postgresql+psycopg2://", "postgresql://")
p = urlparse(url)

timeout_s = int(os.getenv("DB_WAIT_TIMEOUT", "60"))
dbname = (p.path or "/consultpay").lstrip("/") or "consultpay"
host, port = p.hostname or "db", p.port or 5432

print(f"[wait_for_db] Waiting for Postgres at {host}:{port} db={dbname} (timeout={timeout_s}s)")
start = time.time()
while True:
    try:
        psycopg2.connect(
            host=host,
            port=port,
            user=p.username or "consultpay",
            password=p.password or "consultpay",
            dbname=dbname,
            connect_timeout=5,
        ).close()
        print("[wait_for_db] Postgres is ready.")
        break
    except psycopg2.OperationalError as e:
        if time.time() - start > timeout_s:
            print(f"[wait_for_db] Timed out waiting for DB. Last error: {e}")
            raise
        time.sleep(1)
