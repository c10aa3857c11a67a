import os
import sys

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from backend.main import app  # noqa: E402

# Serverless runtimes pick up `app` as the ASGI entrypoint for the arc API.
__all__ = ["app"]
