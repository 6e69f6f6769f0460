#!/usr/bin/env python
import os
import sys
from pathlib import Path

# Make oversight_api, api and requisitions importable when the script
# directory is left off sys.path (isolated/safe-path interpreters).
BACKEND_DIR = str(Path(__file__).resolve().parent)
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

_TRUTHY = {"1", "true", "yes", "on"}


def _default_settings_module(argv: list[str]) -> str:
    if len(argv) > 1 and argv[1] == "test":
        return "oversight_api.settings_test"
    return "oversight_api.settings"


def main() -> None:
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", _default_settings_module(sys.argv))
    if os.environ.get("DJANGO_DEVELOPMENT", "").strip().lower() in _TRUTHY:
        # Local development keeps requisitions in backend/.local/ unless told otherwise.
        os.environ.setdefault("OVERSIGHT_WORKFLOW_DEV_STORE", "1")
        os.environ.setdefault("OVERSIGHT_WORKFLOW_STORE", "file")
    try:
        from django.core.management import execute_from_command_line
    except ImportError as exc:
        raise ImportError(
            "Couldn't import Django. Is the oversight backend installed (pip install -e .)?"
        ) from exc
    execute_from_command_line(sys.argv)


if __name__ == "__main__":
    main()
