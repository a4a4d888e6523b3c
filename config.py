import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
    FLASK_PORT = int(os.getenv("FLASK_PORT", "6000"))

    DB_HOST = os.getenv("DB_HOST", "127.0.0.1")
    DB_PORT = int(os.getenv("DB_PORT", "5432"))
    DB_NAME = os.getenv("DB_NAME", "salon_crm")
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASSWORD = os.getenv("DB_PASSWORD", "postgres")

    SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

    LINNWORKS_APP_ID = os.getenv("LINNWORKS_APP_ID", "")
    LINNWORKS_APP_SECRET = os.getenv("LINNWORKS_APP_SECRET", "")
    LINNWORKS_INSTALL_TOKEN = os.getenv("LINNWORKS_INSTALL_TOKEN", "")
    LINNWORKS_AUTH_URL = os.getenv(
        "LINNWORKS_AUTH_URL",
        "https://api.linnworks.net/api/Auth/AuthorizeByApplication",
    )
    # Shorter than the platform's own token lifetime
    LINNWORKS_SESSION_TTL_MINUTES = float(os.getenv("LINNWORKS_SESSION_TTL_MINUTES", "25"))
    LINNWORKS_TIMEOUT_SECONDS = float(os.getenv("LINNWORKS_TIMEOUT_SECONDS", "30"))

    FALLBACK_SAFETY_RATIO = float(os.getenv("FALLBACK_SAFETY_RATIO", "0.3"))

    # An in-flight placement untouched for this long is treated as abandoned
    PLACEMENT_STALE_MINUTES = float(os.getenv("PLACEMENT_STALE_MINUTES", "15"))

    @property
    def DATABASE_URL(self):
        override = os.getenv("DATABASE_URL")
        if override:
            return override
        return (
            f"postgresql+psycopg2://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


config = Config()
