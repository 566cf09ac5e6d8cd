"""
WSGI / Flask-Migrate entry point.

Usage:
    FLASK_APP=wsgi flask db init       # first time only (creates migrations/)
    FLASK_APP=wsgi flask db migrate -m "description"
    FLASK_APP=wsgi flask db upgrade
    FLASK_APP=wsgi flask reconcile-projects --organization org-1
    gunicorn wsgi:app
"""

from factory_pulse import create_app

app = create_app()
