"""
Application settings.

Values come from environment variables, read once at import time.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "bookstore")

JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", 60))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 10))

# Low-stock watch; an interval of 0 turns the background loop off
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 3))
LOW_STOCK_INTERVAL_SECONDS = float(os.getenv("LOW_STOCK_INTERVAL_SECONDS", 15))

BOOK_PAGE_DEFAULT = int(os.getenv("BOOK_PAGE_DEFAULT", 1))
BOOK_LIMIT_DEFAULT = int(os.getenv("BOOK_LIMIT_DEFAULT", 2))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE")

PORT = int(os.getenv("PORT", 8000))
