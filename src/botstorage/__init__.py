"""Asynchronous MongoDB storage adapters for chatbot state, audit and notification data."""

__version__ = "0.1.0"
