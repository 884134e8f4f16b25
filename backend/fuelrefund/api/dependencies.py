"""FastAPI dependencies for collaborators.

Each external collaborator is resolved through a dependency so tests
can substitute a fake with ``app.dependency_overrides`` instead of
patching module globals.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header

from fuelrefund.core.config import settings
from fuelrefund.services.ingestion_service import IngestionService, JobDispatcher
from fuelrefund.services.quota_service import QuotaService
from fuelrefund.services.storage_service import BlobStore, create_blob_store


@lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    return create_blob_store()


def get_job_dispatcher() -> JobDispatcher:
    from fuelrefund.core.tasks import enqueue_extraction

    return enqueue_extraction


def get_quota_service() -> QuotaService:
    return QuotaService()


def get_ingestion_service(
    blob_store: BlobStore = Depends(get_blob_store),
    dispatch: JobDispatcher = Depends(get_job_dispatcher),
    quota: QuotaService = Depends(get_quota_service),
) -> IngestionService:
    return IngestionService(blob_store=blob_store, dispatch=dispatch, quota=quota)


def get_home_jurisdiction() -> str:
    return settings.HOME_JURISDICTION


def get_uploader_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Id of the authenticated user, forwarded by the auth gateway."""
    return x_user_id
