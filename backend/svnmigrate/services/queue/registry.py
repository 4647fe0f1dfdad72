"""
Redis-backed job registry for the Celery backend.

Celery itself cannot enumerate or cancel queued work by migration id, so
every job envelope is mirrored here:

    svnjob:<job id>                   hash, one field per Job attribute
    svnjobs:lane:<lane>               set of job ids
    svnjobs:migration:<migration id>  set of job ids
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

import redis

from svnmigrate.schemas.migrations import JobType
from .base import Job, JobStatus

logger = logging.getLogger(__name__)


class RedisJobRegistry:
    JOB_PREFIX = "svnjob:"
    LANE_PREFIX = "svnjobs:lane:"
    MIGRATION_PREFIX = "svnjobs:migration:"

    def __init__(self, client: redis.Redis):
        self.redis = client

    def _job_key(self, job_id: str) -> str:
        return f"{self.JOB_PREFIX}{job_id}"

    @staticmethod
    def _encode(job: Job) -> Dict[str, str]:
        return {
            "id": job.id,
            "lane": job.lane,
            "migration_id": job.migration_id,
            "type": job.type.value,
            "payload": json.dumps(job.payload),
            "max_attempts": str(job.max_attempts),
            "status": job.status.value,
            "attempts": str(job.attempts),
            "error": job.error or "",
            "task_id": job.task_id or "",
            "cancel_requested": "1" if job.cancel_requested else "0",
            "created_at": repr(job.created_at),
            "updated_at": repr(job.updated_at),
            "finished_at": repr(job.finished_at) if job.finished_at is not None else "",
        }

    @staticmethod
    def _decode(data: Dict[str, str]) -> Job:
        return Job(
            id=data["id"],
            lane=data["lane"],
            migration_id=data["migration_id"],
            type=JobType(data["type"]),
            payload=json.loads(data["payload"]),
            max_attempts=int(data["max_attempts"]),
            status=JobStatus(data["status"]),
            attempts=int(data.get("attempts") or 0),
            error=data.get("error") or None,
            task_id=data.get("task_id") or None,
            cancel_requested=data.get("cancel_requested") == "1",
            created_at=float(data["created_at"]),
            updated_at=float(data["updated_at"]),
            finished_at=float(data["finished_at"]) if data.get("finished_at") else None,
        )

    def save(self, job: Job) -> None:
        pipe = self.redis.pipeline()
        pipe.hset(self._job_key(job.id), mapping=self._encode(job))
        pipe.sadd(f"{self.LANE_PREFIX}{job.lane}", job.id)
        pipe.sadd(f"{self.MIGRATION_PREFIX}{job.migration_id}", job.id)
        pipe.execute()

    def get(self, job_id: str) -> Optional[Job]:
        data = self.redis.hgetall(self._job_key(job_id))
        if not data:
            return None
        return self._decode(data)

    def update(self, job_id: str, **fields: Any) -> Optional[Job]:
        job = self.get(job_id)
        if job is None:
            return None
        for name, value in fields.items():
            setattr(job, name, value)
        job.updated_at = time.time()
        if not job.is_finished:
            job.finished_at = None
        elif job.finished_at is None:
            job.finished_at = job.updated_at
        self.redis.hset(self._job_key(job_id), mapping=self._encode(job))
        return job

    def delete(self, job: Job) -> None:
        pipe = self.redis.pipeline()
        pipe.delete(self._job_key(job.id))
        pipe.srem(f"{self.LANE_PREFIX}{job.lane}", job.id)
        pipe.srem(f"{self.MIGRATION_PREFIX}{job.migration_id}", job.id)
        pipe.execute()

    def _load(self, job_ids) -> List[Job]:
        jobs = []
        for job_id in job_ids:
            job = self.get(job_id)
            if job is not None:
                jobs.append(job)
        return sorted(jobs, key=lambda j: j.created_at)

    def jobs_in_lane(self, lane: str) -> List[Job]:
        return self._load(self.redis.smembers(f"{self.LANE_PREFIX}{lane}"))

    def jobs_for_migration(self, migration_id: str) -> List[Job]:
        return self._load(self.redis.smembers(f"{self.MIGRATION_PREFIX}{migration_id}"))
