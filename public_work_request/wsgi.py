"""WSGI entry point: ``gunicorn public_work_request.wsgi:app``."""

from .app import create_app

app = create_app()
