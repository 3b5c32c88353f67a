"""Shared helpers: logging setup, UTC timestamps, audit rows and view decorators.

Modules are imported directly (``from src.utils.logging_config import get_logger``)
so importing the package never pulls in the models.
"""
