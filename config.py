import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent
INSTANCE_DIR = BASE_DIR / "instance"
INSTANCE_DIR.mkdir(exist_ok=True)


def _load_dotenv(path: Path) -> None:
    if not path.exists():
        return
    try:
        for raw in path.read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, val = line.split("=", 1)
            key = key.strip()
            if not key or key in os.environ:
                continue
            val = val.strip().strip("'").strip('"')
            os.environ[key] = val
    except (OSError, UnicodeDecodeError):
        # Fail open if .env can't be read.
        return


_load_dotenv(BASE_DIR / ".env")


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def _env_int(key: str, default: int) -> int:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _resolve_path(value: str, fallback: Path) -> str:
    if not value:
        return str(fallback)
    p = Path(value)
    if not p.is_absolute():
        p = BASE_DIR / p
    return str(p)


APP_ENV = _env("DCOLLECT_ENV", "development").strip().lower()

DB_PATH = _resolve_path(_env("DCOLLECT_DB_PATH", ""), INSTANCE_DIR / "dcollect.db")
# Seconds a connection waits on the SQLite write lock before giving up.
DB_TIMEOUT = _env_int("DCOLLECT_DB_TIMEOUT", 30)

HOST = _env("DCOLLECT_HOST", "127.0.0.1")
PORT = _env_int("DCOLLECT_PORT", 8080)
DEBUG = _env_bool(
    "DCOLLECT_DEBUG",
    APP_ENV in ("dev", "development", "local"),
)
LOG_LEVEL = _env("DCOLLECT_LOG_LEVEL", "DEBUG" if DEBUG else "INFO").strip().upper()

# Auth
JWT_SECRET = _env("DCOLLECT_JWT_SECRET", "").strip()
TOKEN_TTL_DAYS = _env_int("DCOLLECT_TOKEN_TTL_DAYS", 7)

# Seed accounts
ADMIN_USERNAME = _env("DCOLLECT_ADMIN_USERNAME", "").strip()
ADMIN_PASSWORD = _env("DCOLLECT_ADMIN_PASSWORD", "")
DISTRICT_DEFAULT_PASSWORD = _env("DCOLLECT_DISTRICT_DEFAULT_PASSWORD", "")

# Submission notifications
ADMIN_EMAIL = _env("DCOLLECT_ADMIN_EMAIL", "").strip()

# Email (SMTP)
SMTP_HOST = _env("DCOLLECT_SMTP_HOST", "")
SMTP_PORT = _env_int("DCOLLECT_SMTP_PORT", 587)
SMTP_USER = _env("DCOLLECT_SMTP_USER", "")
SMTP_PASS = _env("DCOLLECT_SMTP_PASS", "")
SMTP_TLS = _env_bool("DCOLLECT_SMTP_TLS", True)
SMTP_FROM = _env("DCOLLECT_SMTP_FROM", "") or SMTP_USER
SMTP_TIMEOUT = _env_int("DCOLLECT_SMTP_TIMEOUT", 15)
