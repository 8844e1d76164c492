"""
WSGI entrypoint for running the app with Gunicorn or other WSGI servers.

Usage (example):
  gunicorn -w 4 -b 0.0.0.0:8000 redacted.wsgi:app

Settings are read from the environment; a local ``.env`` is loaded first.
"""

import os

from dotenv import load_dotenv

from . import create_app

load_dotenv()

app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "8000"))
    app.run(host="0.0.0.0", port=port)
