import os

POSTGRES_CONN_STRING = os.getenv("POSTGRES_CONN_STRING")
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "postgres" if POSTGRES_CONN_STRING else "memory")

REDIS_HOST = os.getenv("REDIS_HOST")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
EVENT_STREAM = os.getenv("EVENT_STREAM", "rideshare_stream")

# decide() bounds
DECIDE_LOCK_TIMEOUT = float(os.getenv("DECIDE_LOCK_TIMEOUT", "2.0"))
DECIDE_MAX_ATTEMPTS = int(os.getenv("DECIDE_MAX_ATTEMPTS", "3"))
DECIDE_RETRY_BACKOFF = float(os.getenv("DECIDE_RETRY_BACKOFF", "0.05"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
