"""
Queue management API endpoints.

Job counts per lane, cleanup of finished jobs and manual retry.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from svnmigrate.dependencies import migration_service
from svnmigrate.services.migration_service import MigrationService

router = APIRouter(prefix="/svn/queue", tags=["queue"])


class CleanQueueRequest(BaseModel):
    """immediate=True drops failed/cancelled jobs now; otherwise only jobs past retention."""
    immediate: bool = False


@router.get("/status")
async def queue_status(service: MigrationService = Depends(migration_service)):
    return service.queue_status()


@router.post("/clean")
async def clean_queue(
    body: CleanQueueRequest = CleanQueueRequest(),
    service: MigrationService = Depends(migration_service),
):
    return service.clean_queue(body.immediate)


@router.post("/retry/{job_id}")
async def retry_job(job_id: str, service: MigrationService = Depends(migration_service)):
    job = service.retry_job(job_id)
    return {"success": True, "job": job.to_public()}
