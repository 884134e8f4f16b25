"""Fuel-tax refund backend.

The package bundles the FastAPI application, the SQLAlchemy models and
the Dramatiq actors that together ingest fuel receipts, extract them in
the background and estimate the refundable portion of the state fuel
tax per fiscal year.

To run the API locally:

```bash
uvicorn fuelrefund.api.main:app --reload
```

and the worker:

```bash
dramatiq fuelrefund.worker
```
"""

__all__: list[str] = []
