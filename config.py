import os
from dotenv import load_dotenv
load_dotenv()

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
UPLOAD_DIR = os.getenv("UPLOAD_FOLDER") or os.path.join(BASE_DIR, "uploads")

class Config:
    JWT_SECRET = os.getenv("JWT_SECRET", "fallback_secret")
    JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS") or 7)

    # in-process database by default; point DATABASE_URL at a real one to persist
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    UPLOAD_FOLDER = UPLOAD_DIR
    ALLOWED_EXT = {"pdf", "doc", "docx", "csv", "txt"}
    MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES") or 10 * 1024 * 1024)

    # AES-256-GCM key in base64 (optional; files are stored as-is without it)
    ENCRYPTION_KEY_B64 = os.getenv("ENCRYPTION_KEY")

    # none | on_read | sweep
    PERMISSION_EXPIRY_POLICY = os.getenv("PERMISSION_EXPIRY_POLICY", "none")
    EXPIRY_SWEEP_MINUTES = int(os.getenv("EXPIRY_SWEEP_MINUTES") or 5)

    # SMTP (optional)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT") or 587)
    SMTP_USER = os.getenv("SMTP_USER")
    SMTP_PASS = os.getenv("SMTP_PASS")
    FROM_EMAIL = os.getenv("FROM_EMAIL") or os.getenv("SMTP_USER")

    # dashboard origin allowed to call the API with credentials
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
    RATE_LIMIT = os.getenv("RATE_LIMIT", "100 per 15 minutes")
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    PORT = int(os.getenv("PORT") or 5000)
    VERSION = "1.0.0"
