"""
Costbook – Django Settings (Infrastructure Only)
==================================================
Django serves as the persistence container for the costing engine.
The engine's architecture is the authority — Django does not dictate
structure. No views, no URLs: callers embed CostingService directly.
"""

import os
from pathlib import Path

# ── Paths ─────────────────────────────────────────────────────
BASE_DIR = Path(__file__).resolve().parent.parent

# ── Security ──────────────────────────────────────────────────
SECRET_KEY = os.environ.get("COSTBOOK_SECRET_KEY", "costbook-dev-key-replace-before-deployment")

DEBUG = os.environ.get("COSTBOOK_DEBUG", "1") == "1"

ALLOWED_HOSTS = []

# ── Installed Apps ────────────────────────────────────────────
INSTALLED_APPS = [
    "django.contrib.contenttypes",
    # ── Costbook Modules ──────────────────────────────────
    "engines.costing.apps.CostingConfig",
]

MIDDLEWARE = []

# ── Database ──────────────────────────────────────────────────
# SQLite for development. Production DB configured separately.
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("COSTBOOK_DB_PATH", BASE_DIR / "db.sqlite3"),
    }
}

# ── Internationalization ──────────────────────────────────────
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ── Costing Engine ────────────────────────────────────────────
# Read by CostingSettings.from_django_settings(). Unknown keys are
# rejected at startup.
COSTBOOK_COSTING = {
    "allow_negative_stock": False,
    "negative_stock_products": [],
    "currency_places": 2,
    "average_cost_extra_places": 4,
    "checkpoint_interval": 50,
    "cascade_transfers": True,
}

# ── Logging ───────────────────────────────────────────────────
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
        },
    },
    "loggers": {
        "costbook": {
            "handlers": ["console"],
            "level": os.environ.get("COSTBOOK_LOG_LEVEL", "INFO"),
            "propagate": True,
        },
    },
}
