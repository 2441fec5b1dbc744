import logging
from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from schedule_engine.db import get_db
from schedule_engine.errors import ApiError, FatalJobError
from schedule_engine.schemas import JobResultRead, JobTriggerRequest, JobTriggerResponse
from schedule_engine.services.job_queue import JobQueue, JobRegistry, UnknownJobTypeError, build_job_registry

router = APIRouter(tags=["jobs"])
logger = logging.getLogger("schedule_engine.jobs_api")


def get_job_registry() -> JobRegistry:
    return build_job_registry()


@router.post(
    "/api/orgs/{org_id}/jobs/{job_type}",
    response_model=JobTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_job(
    org_id: int,
    job_type: str,
    payload: JobTriggerRequest,
    db: Session = Depends(get_db),
    registry: JobRegistry = Depends(get_job_registry),
) -> JobTriggerResponse:
    queue = JobQueue(db, registry)
    raw_payload: dict[str, Any] = {**payload.payload, "org_id": org_id}
    try:
        if payload.run_now:
            run = queue.run_now(job_type, raw_payload)
        else:
            run = queue.enqueue(job_type, raw_payload)
    except UnknownJobTypeError as exc:
        raise ApiError(status_code=404, code="UNKNOWN_JOB_TYPE", message=str(exc)) from exc
    except ValidationError as exc:
        raise ApiError(status_code=422, code="INVALID_JOB_PAYLOAD", message=str(exc.errors())) from exc
    except FatalJobError as exc:
        status_code = 404 if exc.code == "ORGANIZATION_NOT_FOUND" else 409
        raise ApiError(status_code=status_code, code=exc.code, message=exc.message) from exc

    logger.info(
        "job_trigger_received",
        extra={"job_type": job_type, "org_id": org_id, "run_now": payload.run_now, "deduplicated": run is None},
    )
    if run is None:
        return JobTriggerResponse(job_type=job_type, org_id=org_id, status="DEDUPLICATED")
    if payload.run_now:
        return JobTriggerResponse(
            job_type=job_type,
            org_id=org_id,
            status="COMPLETED",
            job_run_id=run.id,
            result=JobResultRead.model_validate(run.result),
        )
    return JobTriggerResponse(job_type=job_type, org_id=org_id, status="ENQUEUED", job_run_id=run.id)
