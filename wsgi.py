"""
WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    flask db migrate && flask db upgrade  # Flask-Migrate
    flask run-job reminder_dispatch     # run one sweep now
"""

from app import create_app

app = create_app()
