import os
from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, ".env"))

DEV_JWT_SECRET = "farmchain-development-secret-change-me-please"


class Settings:
    def __init__(self):
        self.APP_ENV = os.getenv("APP_ENV", "development")
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./farmchain.db")

        # Tokens are HS256; production must provide its own secret
        self.JWT_SECRET = os.getenv("JWT_SECRET") or DEV_JWT_SECRET
        self.JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", "7"))

        self.FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/")

        # Unset means the admin-only endpoints are disabled
        self.ADMIN_TOKEN = os.getenv("ADMIN_TOKEN") or None

        self.UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(basedir, "uploads"))
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))
        self.ALLOWED_IMAGE_EXTENSIONS = {"jpeg", "jpg", "png", "gif", "webp"}

        self.CONFIRM_MIN_MS = int(os.getenv("CONFIRM_MIN_MS", "5000"))
        self.CONFIRM_MAX_MS = int(os.getenv("CONFIRM_MAX_MS", "15000"))

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

        self.validate()

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    def validate(self):
        if self.APP_ENV not in ("development", "production", "test"):
            raise ValueError(f"APP_ENV must be development, production or test, got {self.APP_ENV!r}")
        if self.is_production and (self.JWT_SECRET == DEV_JWT_SECRET or len(self.JWT_SECRET) < 32):
            raise ValueError("JWT_SECRET must be set to at least 32 characters in production")
        if not 0 <= self.CONFIRM_MIN_MS < self.CONFIRM_MAX_MS:
            raise ValueError("CONFIRM_MIN_MS must be below CONFIRM_MAX_MS")


settings = Settings()
