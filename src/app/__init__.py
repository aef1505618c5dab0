"""Сборка FastAPI-приложения: factory и управление жизненным циклом."""

from src.app.factory import create_app
from src.app.lifecycle import ApplicationLifecycle

__all__ = ["ApplicationLifecycle", "create_app"]
