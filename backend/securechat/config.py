import os
from dotenv import load_dotenv

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017/")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "securechat")

JWT_SECRET = os.getenv("JWT_SECRET") or "dev-secret-change-me"
JWT_ALG = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# upper bound on compare-and-swap attempts for a single record update
MAX_WRITE_RETRIES = int(os.getenv("SECURECHAT_MAX_WRITE_RETRIES", "5"))
MAX_PAGE_SIZE = int(os.getenv("SECURECHAT_MAX_PAGE_SIZE", "200"))
DEFAULT_PAGE_SIZE = 50

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
