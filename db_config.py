"""
Database configuration for the Calaveritas backend.
Supports both SQLite (development) and PostgreSQL (production).
"""

import os

from dotenv import load_dotenv

load_dotenv()

# Database configuration
DATABASE_URL = os.environ.get("DATABASE_URL", "")

# Check if we're using PostgreSQL or SQLite
USE_POSTGRES = DATABASE_URL.startswith("postgres") or DATABASE_URL.startswith("postgresql")

# SQLite file used when DATABASE_URL is not a PostgreSQL URL
SQLITE_PATH = os.environ.get("SQLITE_PATH", os.path.join(".", "temp", "calaveritas.db"))

# Connection pool bounds (shared by both backends)
DB_POOL_MIN = int(os.environ.get("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.environ.get("DB_POOL_MAX", "10"))
DB_POOL_TIMEOUT_SECONDS = float(os.environ.get("DB_POOL_TIMEOUT_SECONDS", "10"))

# Upper bound for a generation transaction (lock wait, statements, idle time).
# Keep it below the client/proxy timeout so a stuck request never pins a row lock.
TRANSACTION_TIMEOUT_SECONDS = float(os.environ.get("TRANSACTION_TIMEOUT_SECONDS", "45"))
