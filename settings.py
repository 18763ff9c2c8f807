import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "store_ratings")
STORAGE_TIMEOUT_MS = int(os.getenv("STORAGE_TIMEOUT_MS", 5000))

JWT_SECRET = os.getenv("JWT_SECRET", "change-this-secret")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Attempts for the idempotent aggregate recompute before giving up with 503
RECOMPUTE_ATTEMPTS = int(os.getenv("RECOMPUTE_ATTEMPTS", 3))

PORT = int(os.getenv("PORT", 8000))
