"""Configuration, persistence and background-processing infrastructure.

Exports the settings object so tests can write ``from fuelrefund.core import settings``.
"""

from .config import settings  # noqa: F401
