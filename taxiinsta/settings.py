import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


APP_DIR_NAME = "TaxiInsta"


def _load_dotenvs() -> None:
    load_dotenv(override=False)
    here = Path(__file__).resolve()
    project_env = here.parents[1] / ".env"
    if project_env.exists():
        load_dotenv(project_env, override=False)


def _parse_cors_origins(raw: str | None) -> list[str]:
    if not raw or not raw.strip():
        return ["*"]
    return [x.strip() for x in raw.split(",") if x.strip()]


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"Invalid {name}: expected a number, got {raw!r}.")
    if value <= 0:
        raise RuntimeError(f"Invalid {name}: must be greater than zero.")
    return value


def _default_user_data_dir() -> Path:
    if os.name == "nt":
        base = Path(os.getenv("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    else:
        base = Path(os.getenv("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / APP_DIR_NAME


_load_dotenvs()

APP_ENV = os.getenv("APP_ENV", "dev").strip().lower()
APP_MODE = os.getenv("APP_MODE", "server").strip().lower()

if APP_MODE not in {"server", "desktop"}:
    raise RuntimeError("Invalid APP_MODE. Use APP_MODE=server or APP_MODE=desktop.")

_user_data_dir = Path(os.getenv("USER_DATA_DIR", str(_default_user_data_dir()))).expanduser().resolve()
_log_dir = Path(os.getenv("LOG_DIR", str(_user_data_dir / "logs"))).expanduser().resolve()
_user_data_dir.mkdir(parents=True, exist_ok=True)
_log_dir.mkdir(parents=True, exist_ok=True)


def _resolve_database_url() -> str:
    db_env = os.getenv("DATABASE_URL", "").strip()
    if db_env:
        return db_env

    if APP_MODE == "desktop":
        db_path = (_user_data_dir / "taxiinsta.db").resolve()
        return f"sqlite+pysqlite:///{db_path}"

    raise RuntimeError("Missing DATABASE_URL. Configure DATABASE_URL (e.g. postgresql+psycopg://...).")


_db = _resolve_database_url()

if not _db.lower().startswith(("postgresql://", "postgresql+psycopg://", "sqlite://", "sqlite+pysqlite://")):
    raise RuntimeError(
        "Invalid DATABASE_URL. Supported schemes: postgresql://, postgresql+psycopg://, sqlite://, sqlite+pysqlite://"
    )

_default_secret = "dev-secret-change-me"
_session_secret = os.getenv("SESSION_SECRET", _default_secret).strip() or _default_secret

_trust_header = _parse_bool(os.getenv("AUTH_TRUST_HEADER"), default=False)

if APP_ENV == "prod":
    if _session_secret == _default_secret:
        raise RuntimeError("SESSION_SECRET default is not allowed in prod. Set SESSION_SECRET in environment.")
    if _trust_header:
        raise RuntimeError("AUTH_TRUST_HEADER is not allowed in prod.")

_log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

_queue_size_raw = os.getenv("FANOUT_QUEUE_SIZE", "").strip()
_queue_size = int(_queue_size_raw) if _queue_size_raw else 256
if _queue_size < 1:
    raise RuntimeError("Invalid FANOUT_QUEUE_SIZE: must be at least 1.")


@dataclass(frozen=True)
class Settings:
    APP_ENV: str
    APP_MODE: str
    DATABASE_URL: str
    cors_origins_list: list[str]
    USER_DATA_DIR: str
    LOG_DIR: str
    LOG_LEVEL: str
    SESSION_SECRET: str
    AUTH_TRUST_HEADER: bool
    TOKEN_TTL_SECONDS: int
    STORE_TIMEOUT_SECONDS: float
    FANOUT_QUEUE_SIZE: int
    WS_HEARTBEAT_SECONDS: float
    DISPATCH_REQUIRE_DRIVERS: bool
    GEOCODER_URL: str
    GEOCODER_TIMEOUT_SECONDS: float
    GEOCODER_USER_AGENT: str


settings = Settings(
    APP_ENV=APP_ENV,
    APP_MODE=APP_MODE,
    DATABASE_URL=_db,
    cors_origins_list=_parse_cors_origins(os.getenv("CORS_ORIGINS")),
    USER_DATA_DIR=str(_user_data_dir),
    LOG_DIR=str(_log_dir),
    LOG_LEVEL=_log_level,
    SESSION_SECRET=_session_secret,
    AUTH_TRUST_HEADER=_trust_header,
    TOKEN_TTL_SECONDS=int(_parse_float("TOKEN_TTL_SECONDS", 12 * 60 * 60)),
    STORE_TIMEOUT_SECONDS=_parse_float("STORE_TIMEOUT_SECONDS", 5.0),
    FANOUT_QUEUE_SIZE=_queue_size,
    WS_HEARTBEAT_SECONDS=_parse_float("WS_HEARTBEAT_SECONDS", 15.0),
    DISPATCH_REQUIRE_DRIVERS=_parse_bool(os.getenv("DISPATCH_REQUIRE_DRIVERS"), default=True),
    GEOCODER_URL=os.getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org/search").strip(),
    GEOCODER_TIMEOUT_SECONDS=_parse_float("GEOCODER_TIMEOUT_SECONDS", 4.0),
    GEOCODER_USER_AGENT=os.getenv("GEOCODER_USER_AGENT", "taxiinsta-dispatch/1.0").strip() or "taxiinsta-dispatch/1.0",
)

DATABASE_URL = settings.DATABASE_URL
APP_MODE = settings.APP_MODE
