"""
Check that the PostgreSQL database for authgate is reachable.
Run once before `alembic upgrade head`: python scripts/init_postgres.py

Create the role and database first if needed:

  sudo -u postgres psql
  CREATE USER authgate WITH PASSWORD 'authgate';
  CREATE DATABASE authgate_db OWNER authgate;
  GRANT ALL PRIVILEGES ON DATABASE authgate_db TO authgate;
  \q
"""

import sys

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from authgate.config import settings


def main():
    url = settings.get_database_url()
    if not url.startswith("postgresql"):
        print("Database URL is not PostgreSQL. Skipping.")
        return
    try:
        engine = create_engine(url)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("PostgreSQL connection OK. Database exists.")
    except SQLAlchemyError as e:
        print(f"Cannot connect to PostgreSQL: {e}")
        print("\nCreate the database first:")
        print("  psql -U postgres -c \"CREATE USER authgate WITH PASSWORD 'authgate';\"")
        print("  psql -U postgres -c \"CREATE DATABASE authgate_db OWNER authgate;\"")
        print("  psql -U postgres -c \"GRANT ALL PRIVILEGES ON DATABASE authgate_db TO authgate;\"")
        sys.exit(1)


if __name__ == "__main__":
    main()
