import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


def _load_env_file(path: Path) -> None:
    """
    Lightweight .env loader to keep local database and auth settings in one
    place without requiring an external dependency.
    """
    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.lower().startswith("export "):
            key = key[7:].strip()
        if not key:
            continue
        value = value.strip().strip('"').strip("'")
        os.environ.setdefault(key, value)


_load_env_file(BASE_DIR / ".env")


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_csv_env(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name} value: {raw!r}") from exc


def _get_int_env(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name} value: {raw!r}") from exc


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = _get_bool_env("DJANGO_DEBUG", False)
ALLOWED_HOSTS = _get_csv_env("DJANGO_ALLOWED_HOSTS", ["*"])

if not DEBUG:
    if SECRET_KEY == "dev-only-insecure-key":
        raise RuntimeError("DEBUG is False but DJANGO_SECRET_KEY is still the dev default.")
    if not ALLOWED_HOSTS or "*" in ALLOWED_HOSTS:
        raise RuntimeError("DEBUG is False but DJANGO_ALLOWED_HOSTS is empty or contains '*'.")

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "api",
    "requisitions",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]

ROOT_URLCONF = "oversight_api.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "oversight_api.wsgi.application"

# PostgreSQL is the runtime database; SQLite is opt-in for local tooling and tests.
use_sqlite = _get_bool_env("DJANGO_USE_SQLITE", False)
allow_sqlite = _get_bool_env("DJANGO_ALLOW_SQLITE", False)
if use_sqlite and not allow_sqlite:
    raise RuntimeError(
        "SQLite backend is disabled by default. "
        "Set DJANGO_ALLOW_SQLITE=1 only for temporary local tooling."
    )

if use_sqlite:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DB_NAME", ""),
            "USER": os.getenv("DB_USER", ""),
            "PASSWORD": os.getenv("DB_PASSWORD", ""),
            "HOST": os.getenv("DB_HOST", ""),
            "PORT": os.getenv("DB_PORT", "5432"),
        }
    }

AUTH_PASSWORD_VALIDATORS = []

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

OVERSIGHT_LOG_LEVEL = os.getenv("OVERSIGHT_LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "level": OVERSIGHT_LOG_LEVEL,
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "oversight.audit": {
            "handlers": ["console"],
            "level": OVERSIGHT_LOG_LEVEL,
            "propagate": False,
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
}

# AuthN/AuthZ configuration (env-driven; claim names come from the identity provider).
AUTH_ENABLED = _get_bool_env("AUTH_ENABLED", False)
AUTH_ISSUER = os.getenv("AUTH_ISSUER", "")
AUTH_AUDIENCE = os.getenv("AUTH_AUDIENCE", "")
AUTH_JWKS_URL = os.getenv("AUTH_JWKS_URL", "")
AUTH_ALGORITHMS = _get_csv_env("AUTH_ALGORITHMS", ["RS256"])
AUTH_USER_ID_CLAIM = os.getenv("AUTH_USER_ID_CLAIM", "sub")
AUTH_USERNAME_CLAIM = os.getenv("AUTH_USERNAME_CLAIM", "")
AUTH_ROLES_CLAIM = os.getenv("AUTH_ROLES_CLAIM", "")
AUTH_DEPARTMENT_CLAIM = os.getenv("AUTH_DEPARTMENT_CLAIM", "")
AUTH_NAME_CLAIM = os.getenv("AUTH_NAME_CLAIM", "")
AUTH_EMAIL_CLAIM = os.getenv("AUTH_EMAIL_CLAIM", "email")

if AUTH_ENABLED:
    missing = []
    if not AUTH_ISSUER:
        missing.append("AUTH_ISSUER")
    if not AUTH_AUDIENCE:
        missing.append("AUTH_AUDIENCE")
    if not AUTH_JWKS_URL:
        missing.append("AUTH_JWKS_URL")
    if not AUTH_USER_ID_CLAIM:
        missing.append("AUTH_USER_ID_CLAIM")
    if not AUTH_ALGORITHMS:
        missing.append("AUTH_ALGORITHMS")
    if not AUTH_ROLES_CLAIM:
        missing.append("AUTH_ROLES_CLAIM")
    if missing:
        raise RuntimeError(
            "AUTH_ENABLED is true but required settings are missing: "
            + ", ".join(missing)
        )

DEV_AUTH_ENABLED = _get_bool_env("DEV_AUTH_ENABLED", False)
DEV_AUTH_USER_ID = os.getenv("DEV_AUTH_USER_ID", "dev-user")
DEV_AUTH_ROLES = _get_csv_env("DEV_AUTH_ROLES", [])
DEV_AUTH_DEPARTMENT = os.getenv("DEV_AUTH_DEPARTMENT", "") or None
DEV_AUTH_NAME = os.getenv("DEV_AUTH_NAME", "") or None
DEV_AUTH_EMAIL = os.getenv("DEV_AUTH_EMAIL", "") or None
DEV_AUTH_PERMISSIONS = _get_csv_env("DEV_AUTH_PERMISSIONS", [])

# Requisition workflow settings. OVERSIGHT_VAT_RATE is read by requisitions.rules.
OVERSIGHT_DEFAULT_CURRENCY = os.getenv("OVERSIGHT_DEFAULT_CURRENCY", "ZAR").strip().upper() or "ZAR"
OVERSIGHT_FINANCE_REQUIRES_HOD_APPROVAL = _get_bool_env(
    "OVERSIGHT_FINANCE_REQUIRES_HOD_APPROVAL", False
)
OVERSIGHT_REQUIRE_BUDGET_CONFIRMATION = _get_bool_env(
    "OVERSIGHT_REQUIRE_BUDGET_CONFIRMATION", True
)
OVERSIGHT_WORKFLOW_STORE = os.getenv(
    "OVERSIGHT_WORKFLOW_STORE",
    "db" if DATABASES["default"]["ENGINE"].endswith("postgresql") else "file",
).strip().lower()
if OVERSIGHT_WORKFLOW_STORE not in {"db", "file"}:
    raise RuntimeError(f"Invalid OVERSIGHT_WORKFLOW_STORE value: {OVERSIGHT_WORKFLOW_STORE!r}")
OVERSIGHT_NOTIFY_WEBHOOK_URL = os.getenv("OVERSIGHT_NOTIFY_WEBHOOK_URL", "")
OVERSIGHT_NOTIFY_TIMEOUT_SECONDS = _get_float_env("OVERSIGHT_NOTIFY_TIMEOUT_SECONDS", 5.0)
OVERSIGHT_LIST_PAGE_LIMIT = _get_int_env("OVERSIGHT_LIST_PAGE_LIMIT", 500)
