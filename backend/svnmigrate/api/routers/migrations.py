"""SVN migration API router: source introspection and migration lifecycle."""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query

from svnmigrate.dependencies import migration_service, svn_client
from svnmigrate.schemas.migrations import (
    JobCredentials,
    MigrationCreate,
    MigrationLogResponse,
    MigrationResponse,
    PreviewRequest,
    ResumeRequest,
    SvnCredentials,
)
from svnmigrate.services.migration_service import MigrationService
from svnmigrate.services.vcs.svn_client import SvnClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/svn", tags=["svn"])


# Source introspection runs `svn` subprocesses, so these are sync
# endpoints (FastAPI runs them in the threadpool).

@router.post("/test-connection")
def test_connection(body: SvnCredentials, svn: SvnClient = Depends(svn_client)):
    """Check that the SVN URL is reachable with the given credentials."""
    info = svn.test_connection(body.svn_url, body.svn_username, body.svn_password)
    return {"success": True, "info": info}


@router.post("/extract-users")
def extract_users(body: SvnCredentials, svn: SvnClient = Depends(svn_client)):
    """Distinct commit authors, for building an authors mapping."""
    users = svn.extract_users(body.svn_url, body.svn_username, body.svn_password)
    return {"users": users, "total": len(users)}


@router.post("/preview")
def preview(body: PreviewRequest, svn: SvnClient = Depends(svn_client)) -> Dict[str, Any]:
    return svn.preview(
        body.svn_url,
        body.svn_username,
        body.svn_password,
        body.layout,
        body.authors_mapping,
    )


@router.post("/migrations", response_model=MigrationResponse, status_code=201)
async def create_migration(
    body: MigrationCreate,
    service: MigrationService = Depends(migration_service),
):
    """
    Register a migration.

    With auto_start the full import is enqueued immediately; otherwise the
    migration stays pending until POST /migrations/{id}/start.
    """
    migration = service.register(body)
    return MigrationResponse.from_record(migration)


@router.get("/migrations", response_model=List[MigrationResponse])
async def list_migrations(service: MigrationService = Depends(migration_service)):
    return [MigrationResponse.from_record(m) for m in service.list()]


@router.get("/migrations/{migration_id}", response_model=MigrationResponse)
async def get_migration(migration_id: str, service: MigrationService = Depends(migration_service)):
    return MigrationResponse.from_record(service.get(migration_id))


@router.get("/migrations/{migration_id}/logs", response_model=MigrationLogResponse)
async def get_migration_logs(
    migration_id: str,
    limit: int = Query(100, ge=1, le=1000),
    service: MigrationService = Depends(migration_service),
):
    """Most recent log lines first."""
    return MigrationLogResponse(logs=service.get_logs(migration_id, limit))


@router.post("/migrations/{migration_id}/start", response_model=MigrationResponse)
async def start_migration(
    migration_id: str,
    body: JobCredentials,
    service: MigrationService = Depends(migration_service),
):
    return MigrationResponse.from_record(service.start(migration_id, body))


@router.post("/migrations/{migration_id}/sync", response_model=MigrationResponse)
async def sync_migration(
    migration_id: str,
    body: JobCredentials,
    service: MigrationService = Depends(migration_service),
):
    """Enqueue an incremental sync of new SVN revisions."""
    return MigrationResponse.from_record(service.sync(migration_id, body))


@router.post("/migrations/{migration_id}/stop")
async def stop_migration(migration_id: str, service: MigrationService = Depends(migration_service)):
    result = service.stop(migration_id)
    logger.info("Migration stop requested", extra={"migration_id": migration_id})
    return {"success": True, **result}


@router.post("/migrations/{migration_id}/resume", response_model=MigrationResponse)
async def resume_migration(
    migration_id: str,
    body: ResumeRequest,
    service: MigrationService = Depends(migration_service),
):
    credentials = JobCredentials(
        svn_username=body.svn_username,
        svn_password=body.svn_password,
        gitlab_token=body.gitlab_token,
    )
    return MigrationResponse.from_record(service.resume(migration_id, body.resume_from, credentials))


@router.delete("/migrations/{migration_id}")
def delete_migration(migration_id: str, service: MigrationService = Depends(migration_service)):
    service.delete(migration_id)
    return {"success": True}
