import os
import secrets
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

ORIGIN = os.getenv("ORIGIN", "http://localhost:8000")

# Security Configuration
SESSION_SECRET = os.getenv("SESSION_SECRET", secrets.token_hex(32))

# Owner used when no user is logged in (local development only)
PUBLIC_USER_ID = os.getenv("BRANCHING_TRAIL_SESSION_USER_ID", "public-user")
ALLOW_ANONYMOUS = os.getenv("ALLOW_ANONYMOUS", "true").lower() in ("1", "true", "yes")

# Storage Configuration
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()
SESSIONS_FILE = os.getenv("SESSIONS_FILE", os.path.join(os.getcwd(), "data", "sessions.json"))

# Generation Configuration
MODEL_NAME = os.getenv("MODEL_NAME", "gemini-2.5-flash")
GEMINI_CMD = os.getenv("GEMINI_CMD", "gemini")
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "120"))

# Tree limits
MAX_TREE_NODES = int(os.getenv("MAX_TREE_NODES", "2000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
