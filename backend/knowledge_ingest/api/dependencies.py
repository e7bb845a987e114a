"""
Composed FastAPI Dependencies

Route handlers import from here, never from db/session or the orchestrator
module directly. The orchestrator is built once in the app lifespan and
read back from `app.state`.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_ingest.core.config import Settings, get_settings
from knowledge_ingest.db.session import get_db
from knowledge_ingest.services.documents import DocumentService
from knowledge_ingest.services.orchestrator import DocumentProcessingOrchestrator


def get_orchestrator(request: Request) -> DocumentProcessingOrchestrator:
    return request.app.state.orchestrator


def get_document_service(
    db:           Annotated[AsyncSession, Depends(get_db)],
    orchestrator: Annotated[DocumentProcessingOrchestrator, Depends(get_orchestrator)],
    settings:     Annotated[Settings, Depends(get_settings)],
) -> DocumentService:
    return DocumentService(db=db, orchestrator=orchestrator, settings=settings)


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Orchestrator = Annotated[DocumentProcessingOrchestrator, Depends(get_orchestrator)]
Documents    = Annotated[DocumentService,                Depends(get_document_service)]
