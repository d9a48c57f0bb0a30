# config/settings/local.py
from .base import *  # noqa

DEBUG = os.getenv("DJANGO_DEBUG", "1") == "1"

LOGGING["loggers"]["lab_core"]["level"] = os.getenv("LAB_LOG_LEVEL", "DEBUG")
