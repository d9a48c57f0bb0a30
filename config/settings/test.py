# config/settings/test.py
from .base import *  # noqa

DEBUG = False
SECRET_KEY = "test-only-key"
PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

LOGGING["loggers"]["lab_core"]["level"] = "WARNING"
# let caplog see pipeline warnings
LOGGING["loggers"]["lab_core"]["propagate"] = True

COMMON_IDEMPOTENCY_USE_DB = True
LAB_HL7_STRICT_NUMERIC = False
