"""WSGI entry point for production servers"""
from replicator import create_app

app = create_app(with_scheduler=True)
