import os
from urllib.parse import quote_plus

from dotenv import load_dotenv


GOOGLE_DEFAULT_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
APPLE_DEFAULT_JWKS_URL = "https://appleid.apple.com/auth/keys"

EMAIL_COLLISION_POLICIES = frozenset({"reject", "link"})


def str_to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def merge_unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in items:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. In prod, env vars come from the service config.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if self.ENV != "prod":
            load_dotenv()

        # ----------------------------
        # Database
        # ----------------------------
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
        self.DB_HOST = os.getenv("DB_HOST", "")
        self.DB_PORT = os.getenv("DB_PORT", "5432")
        self.DB_NAME = os.getenv("DB_NAME", "")
        self.DB_APP_USER = os.getenv("DB_APP_USER", "")
        self.DB_APP_PASSWORD = os.getenv("DB_APP_PASSWORD", "")
        self.DB_MIGRATOR_USER = os.getenv("DB_MIGRATOR_USER", "")
        self.DB_MIGRATOR_PASSWORD = os.getenv("DB_MIGRATOR_PASSWORD", "")
        self.DB_SSLMODE = os.getenv("DB_SSLMODE", "require").strip().lower()

        # Bounded storage calls: connect, per-statement and pool checkout timeouts.
        self.DB_CONNECT_TIMEOUT_SECONDS = int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "5"))
        self.DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))
        self.DB_POOL_TIMEOUT_SECONDS = int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "10"))
        self.STORAGE_RETRIES = int(os.getenv("STORAGE_RETRIES", "2"))

        # ----------------------------
        # CORS
        # ----------------------------
        dev_defaults = [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]

        cors_from_env = parse_csv(os.getenv("CORS_ORIGINS"))
        if self.ENV == "prod":
            self.CORS_ORIGINS = merge_unique(cors_from_env)
        else:
            self.CORS_ORIGINS = merge_unique(cors_from_env + dev_defaults)

        # ----------------------------
        # Session tokens (shared with password login)
        # ----------------------------
        self.JWT_SECRET = os.getenv("JWT_SECRET", "")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15"))
        self.REFRESH_TOKEN_EXPIRE_HOURS = int(os.getenv("REFRESH_TOKEN_EXPIRE_HOURS", "24"))

        # ----------------------------
        # Social sign-in providers
        # ----------------------------
        # Comma-separated so web and native clients can share one backend.
        self.GOOGLE_CLIENT_IDS = parse_csv(os.getenv("GOOGLE_CLIENT_IDS"))
        self.GOOGLE_JWKS_URL = os.getenv("GOOGLE_JWKS_URL", GOOGLE_DEFAULT_JWKS_URL).strip()
        # Apple: Services ID for web, bundle ID for iOS.
        self.APPLE_CLIENT_IDS = parse_csv(os.getenv("APPLE_CLIENT_IDS"))
        self.APPLE_JWKS_URL = os.getenv("APPLE_JWKS_URL", APPLE_DEFAULT_JWKS_URL).strip()

        self.JWKS_REFRESH_SECONDS = int(os.getenv("JWKS_REFRESH_SECONDS", "3600"))
        self.JWKS_MIN_REFRESH_SECONDS = int(os.getenv("JWKS_MIN_REFRESH_SECONDS", "30"))
        self.JWKS_FETCH_TIMEOUT_SECONDS = float(os.getenv("JWKS_FETCH_TIMEOUT_SECONDS", "5"))
        self.JWKS_FETCH_RETRIES = int(os.getenv("JWKS_FETCH_RETRIES", "2"))

        self.SOCIAL_AUTH_INCLUDE_USER = str_to_bool(os.getenv("SOCIAL_AUTH_INCLUDE_USER"), default=True)
        # What to do when a first-time social login carries the email of an existing,
        # unlinked local account: "reject" (409) or "link" (bind identity to that account).
        self.SOCIAL_EMAIL_COLLISION_POLICY = (
            os.getenv("SOCIAL_EMAIL_COLLISION_POLICY", "reject").strip().lower()
        )

        # Whether verification failures expose which check failed. Off in prod by default.
        self.AUTH_ERROR_DETAIL = str_to_bool(
            os.getenv("AUTH_ERROR_DETAIL"),
            default=self.ENV != "prod",
        )

        # Final: fail fast in prod
        self._validate_prod()

    def _validate_prod(self) -> None:
        if self.SOCIAL_EMAIL_COLLISION_POLICY not in EMAIL_COLLISION_POLICIES:
            raise RuntimeError(
                "SOCIAL_EMAIL_COLLISION_POLICY must be one of: "
                + ", ".join(sorted(EMAIL_COLLISION_POLICIES))
            )

        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.JWT_SECRET:
            missing.append("JWT_SECRET")
        if not self.DATABASE_URL:
            if not self.DB_HOST:
                missing.append("DB_HOST")
            if not self.DB_NAME:
                missing.append("DB_NAME")
            if not self.DB_APP_USER:
                missing.append("DB_APP_USER")
            if not self.DB_APP_PASSWORD:
                missing.append("DB_APP_PASSWORD")
            if self.DB_SSLMODE != "require":
                raise RuntimeError("DB_SSLMODE must be 'require' in prod")

        if not self.GOOGLE_CLIENT_IDS and not self.APPLE_CLIENT_IDS:
            missing.append("GOOGLE_CLIENT_IDS or APPLE_CLIENT_IDS")

        if not self.CORS_ORIGINS:
            missing.append("CORS_ORIGINS")

        cors_joined = ",".join(self.CORS_ORIGINS)
        if "localhost" in cors_joined or "127.0.0.1" in cors_joined:
            raise RuntimeError("CORS_ORIGINS contains localhost/dev origins in prod")

        for url in (self.GOOGLE_JWKS_URL, self.APPLE_JWKS_URL):
            if url and not url.startswith("https://"):
                raise RuntimeError(f"JWKS URL should be https://... in prod: {url}")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    @property
    def is_prod(self) -> bool:
        return self.ENV == "prod"

    def _build_database_url(self, user: str, password: str) -> str:
        encoded_password = quote_plus(password)
        return (
            f"postgresql+psycopg2://{user}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?sslmode={self.DB_SSLMODE}"
        )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)


settings = Settings()


def require_jwt_secret() -> None:
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set")
