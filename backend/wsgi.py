# backend/wsgi.py
from flowledger import create_app

app = create_app()
