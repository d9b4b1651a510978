"""Repository registration routes."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from workspace_engine.deps import (
    get_lifecycle_manager,
    get_repository_store,
    to_http_exception,
    verify_internal_auth,
)
from workspace_engine.managers.service_manager import ServiceLifecycleManager
from workspace_engine.models.repository import RepositoryCreateRequest
from workspace_engine.models.services import RepositoryCreateResponse
from workspace_engine.storage.repository_store import RepositoryStore
from workspace_engine.validation import ValidationError, validate_sandbox_id

logger = structlog.get_logger()

router = APIRouter(tags=["provisioning"], dependencies=[Depends(verify_internal_auth)])


@router.post(
    "/workspace-provision/{sandbox_id}",
    response_model=RepositoryCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def provision_repository(
    sandbox_id: str,
    request: RepositoryCreateRequest,
    store: Annotated[RepositoryStore, Depends(get_repository_store)],
    lifecycle: Annotated[ServiceLifecycleManager, Depends(get_lifecycle_manager)],
) -> RepositoryCreateResponse:
    """Register a repository under the next free slot, optionally starting services."""
    try:
        validate_sandbox_id(sandbox_id)
        repository = await store.add_repository(
            sandbox_id,
            name=request.name,
            source_type=request.source_type,
            url=request.url,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except ValueError as e:
        # Duplicate name or slot range exhausted
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except Exception as e:
        raise to_http_exception(e, sandbox_id) from e

    if not request.auto_start:
        return RepositoryCreateResponse(repository=repository)

    try:
        restart = await lifecycle.restart_services_complete(sandbox_id)
    except Exception as e:
        raise to_http_exception(e, sandbox_id) from e

    # Reload so the response carries the links written by the restart
    repositories = await store.get_repositories(sandbox_id) or []
    refreshed = next((r for r in repositories if r.id == repository.id), repository)
    return RepositoryCreateResponse(repository=refreshed, restart=restart)
