"""
FastAPI Dependencies

Provides dependency injection for:
- Settings (process-wide)
- Storage (singleton from StorageFactory)
- Clipdrop client (per-request, cheap)
- Upload pipeline and retrieval service (per-request)

Tests swap any of these through app.dependency_overrides.
"""

from fastapi import Depends

from bgflip.core.config import Settings, settings
from bgflip.core.storage import IStorage, get_storage
from bgflip.pipeline.clipdrop import ClipdropClient
from bgflip.pipeline.orchestrator import BackgroundRemover, UploadPipeline
from bgflip.pipeline.retrieval import ImageRetrievalService


def get_settings() -> Settings:
    """Returns the process-wide settings."""
    return settings


def get_background_remover(app_settings: Settings = Depends(get_settings)) -> BackgroundRemover:
    """Returns a Clipdrop client; a missing API key only fails when it is used."""
    return ClipdropClient.from_settings(app_settings)


def get_upload_pipeline(
    storage: IStorage = Depends(get_storage),
    remover: BackgroundRemover = Depends(get_background_remover),
    app_settings: Settings = Depends(get_settings),
) -> UploadPipeline:
    return UploadPipeline(storage=storage, remover=remover, settings=app_settings)


def get_retrieval_service(storage: IStorage = Depends(get_storage)) -> ImageRetrievalService:
    return ImageRetrievalService(storage)
