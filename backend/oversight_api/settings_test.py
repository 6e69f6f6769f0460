"""
Settings for the test runner: SQLite, DEBUG on and the JSON workflow store,
unless the environment already says otherwise.
"""
import os

os.environ.setdefault("DJANGO_DEBUG", "1")
os.environ.setdefault("DJANGO_USE_SQLITE", "1")
os.environ.setdefault("DJANGO_ALLOW_SQLITE", "1")
os.environ.setdefault("OVERSIGHT_WORKFLOW_STORE", "file")

from oversight_api.settings import *  # noqa: E402,F401,F403
