# backend/wsgi.py
from csms import create_app

app = create_app()
