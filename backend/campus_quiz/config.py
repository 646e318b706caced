"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    DATABASE_URL: str
    ACCESS_CODE_LENGTH: int
    ACCESS_CODE_MAX_RETRIES: int
    VERIFY_RATE_LIMIT_PER_MIN: int
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'campus_quiz.db'}")
        self.ACCESS_CODE_LENGTH = int(os.getenv("ACCESS_CODE_LENGTH", "6"))
        self.ACCESS_CODE_MAX_RETRIES = int(os.getenv("ACCESS_CODE_MAX_RETRIES", "10"))
        self.VERIFY_RATE_LIMIT_PER_MIN = int(os.getenv("VERIFY_RATE_LIMIT_PER_MIN", "30"))
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.ACCESS_CODE_LENGTH < 4:
            raise RuntimeError("ACCESS_CODE_LENGTH must be at least 4")
        if self.ACCESS_CODE_MAX_RETRIES < 1:
            raise RuntimeError("ACCESS_CODE_MAX_RETRIES must be at least 1")


settings = Settings()
