"""
wsgi.py — Entry point for production servers (Gunicorn with Uvicorn workers)

Usage:
  gunicorn -k uvicorn.workers.UvicornWorker wsgi:application
  uvicorn wsgi:application --port 8000

The app is built here, from the environment, so that:
  1. The module name is stable regardless of how the server is invoked.
  2. Importing app.py (tests, manage.py) does not open a database.

With more than one worker, set SESSION_BACKEND=redis so designer sessions are
visible to every worker.
"""

from app import create_app

application = create_app()  # Gunicorn looks for 'application'
