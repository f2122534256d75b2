import os

import dotenv

dotenv.load_dotenv("./.env")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///x-ui.db")

ENGINE_API_HOST = os.getenv("ENGINE_API_HOST", "127.0.0.1")
ENGINE_API_PORT = int(os.getenv("ENGINE_API_PORT", "62789"))
ENGINE_API_PATH = os.getenv("ENGINE_API_PATH", "")
ENGINE_API_TIMEOUT = float(os.getenv("ENGINE_API_TIMEOUT", "5"))

TRAFFIC_INTERVAL = float(os.getenv("TRAFFIC_INTERVAL", "10"))  # seconds

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
