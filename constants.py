import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_SECONDS = int(os.getenv("JWT_EXPIRE_SECONDS", 7 * 24 * 3600))

# Upper bounds so a slow verifier or store can't hang a handshake or an event
HANDSHAKE_TIMEOUT_SECONDS = float(os.getenv("HANDSHAKE_TIMEOUT_SECONDS", 5))
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", 5))
# A client that can't take a frame within this is dropped
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", 5))

CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
