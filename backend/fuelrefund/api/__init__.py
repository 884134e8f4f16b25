"""HTTP API package.

Router modules live in :mod:`fuelrefund.api.routes` so tests can mount a
single router, e.g. ``from fuelrefund.api.routes.receipts import router``.
"""

__all__ = [
    "routes",
]
