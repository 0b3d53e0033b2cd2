"""
uvicorn 使用的应用实例
"""
from .app import create_app

app = create_app()
