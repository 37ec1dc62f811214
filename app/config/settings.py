"""
Django settings for the rspamd_filter project.

The filter has no database, no views and no templates. Django gives us the
management command, the settings and the logging configuration.

Everything here can be overridden from the environment.
"""
# system imports
#
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "rspamd-filter-has-no-secrets")
DEBUG = os.environ.get("DEBUG", "false").lower() in ("1", "true", "yes")

ALLOWED_HOSTS: list[str] = []

INSTALLED_APPS = [
    "rspamd_filter",
]

DATABASES: dict = {}

USE_TZ = True
TIME_ZONE = "UTC"

# rspamd
#
RSPAMD_URL = os.environ.get("RSPAMD_URL", "http://localhost:11333/checkv2")

# Seconds to wait on rspamd. None waits forever; a stuck scan only stalls
# the session it belongs to.
#
RSPAMD_TIMEOUT = (
    float(os.environ["RSPAMD_TIMEOUT"])
    if os.environ.get("RSPAMD_TIMEOUT")
    else None
)

# Upper bound on requests to rspamd outstanding at once across all sessions.
#
MAX_CONCURRENT_SCANS = int(os.environ.get("MAX_CONCURRENT_SCANS", "32"))

# Sentry
#
SENTRY_DSN = os.environ.get("SENTRY_DSN") or None
SENTRY_TRACES_SAMPLE_RATE = float(
    os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.0")
)
SENTRY_PROFILES_SAMPLE_RATE = float(
    os.environ.get("SENTRY_PROFILES_SAMPLE_RATE", "0.0")
)

# Logging
#
# stdout is our channel to smtpd. Anything we log MUST go to stderr, which
# smtpd copies in to its own log.
#
LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG" if DEBUG else "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {
            "format": "rspamd_filter: {levelname} {name}: {message}",
            "style": "{",
        },
    },
    "handlers": {
        "stderr": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
            "formatter": "simple",
        },
    },
    "root": {
        "handlers": ["stderr"],
        "level": "WARNING",
    },
    "loggers": {
        "rspamd_filter": {
            "handlers": ["stderr"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}
