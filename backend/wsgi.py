# backend/wsgi.py
from tierflow import create_app

app = create_app()
