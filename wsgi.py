"""WSGI entry point, e.g. ``gunicorn wsgi:app``."""
from __future__ import annotations

from babyspa import create_app, start_background_services

app = create_app()
start_background_services(app)
