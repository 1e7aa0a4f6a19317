from datetime import date, datetime, time
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from diabetify.api.auth import current_user_id
from diabetify.database.models import JOB_COMPLETED, JOB_STATUSES, PredictionJob
from diabetify.errors import Forbidden, NotFound
from diabetify.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


class WhatIfRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    smoking_status: int = Field(..., alias="smokingStatus", ge=0, le=2)
    years_of_smoking: int = Field(..., alias="yearsOfSmoking", ge=0)
    avg_smoke_count: int = Field(..., alias="avgSmokeCount", ge=0)
    weight: float = Field(..., alias="weight", gt=0)
    is_hypertension: bool = Field(..., alias="isHypertension")
    physical_activity_frequency: int = Field(..., alias="physicalActivityFrequency", ge=0)
    is_cholesterol: bool = Field(..., alias="isCholesterol")


def _owned_job(request: Request, job_id: str, user_id: int) -> PredictionJob:
    job = request.app.state.jobs.get_job(job_id)
    if job is None:
        raise NotFound(f"Job {job_id} not found")
    if job.user_id != user_id:
        raise Forbidden("Job belongs to a different user")
    return job


def _day_bounds(start_date: date, end_date: date):
    return datetime.combine(start_date, time.min), datetime.combine(end_date, time.max)


# --- Prediction jobs ---

@router.post("/predict", status_code=202)
async def submit_prediction(request: Request, user_id: int = Depends(current_user_id)):
    """
    Queues a prediction from the caller's stored profile and returns at once.
    """
    job = await request.app.state.worker.submit_job(user_id)
    return {"status": "success", "message": "Prediction job submitted", "jobId": job.id}


@router.post("/predict/what-if", status_code=202)
async def submit_what_if(body: WhatIfRequest, request: Request, user_id: int = Depends(current_user_id)):
    job = await request.app.state.worker.submit_job(user_id, is_what_if=True, overrides=body.model_dump())
    return {"status": "success", "message": "What-if prediction job submitted", "jobId": job.id}


@router.get("/jobs")
def list_jobs(request: Request, status: Optional[str] = None,
              limit: int = Query(10, ge=1, le=100), user_id: int = Depends(current_user_id)):
    jobs = request.app.state.jobs
    if status:
        if status not in JOB_STATUSES:
            return JSONResponse(status_code=400, content={
                "status": "error", "error": "InvalidStatus", "message": f"Unknown job status '{status}'",
            })
        found = jobs.get_jobs_by_user_and_status(user_id, status, limit)
    else:
        found = jobs.get_jobs_by_user(user_id, limit)
    return {"status": "success", "count": len(found), "jobs": [j.to_dict() for j in found]}


@router.get("/jobs/stats")
def job_statistics(request: Request, user_id: int = Depends(current_user_id)):
    return {"status": "success", "stats": request.app.state.jobs.get_statistics(user_id)}


@router.get("/jobs/{job_id}")
def get_job_status(job_id: str, request: Request, user_id: int = Depends(current_user_id)):
    return _owned_job(request, job_id, user_id).to_dict()


@router.get("/jobs/{job_id}/result")
def get_job_result(job_id: str, request: Request, user_id: int = Depends(current_user_id)):
    """
    Result of a finished job. Unfinished jobs answer with notReady; what-if
    results are served from memory until they expire.
    """
    job = _owned_job(request, job_id, user_id)

    if job.status != JOB_COMPLETED:
        return {
            "jobId": job.id,
            "notReady": not job.is_terminal,
            "status": job.status,
            "errorMessage": job.error_message,
        }

    if job.is_what_if:
        payload, found = request.app.state.worker.get_what_if_result(job.id)
        if not found:
            raise NotFound("What-if result has expired or was not found")
        return payload

    if job.prediction_id is None:
        raise NotFound("Job completed but no result was recorded")
    prediction = request.app.state.predictions.get(user_id, job.prediction_id)
    if prediction is None:
        raise NotFound(f"Prediction {job.prediction_id} not found")
    result = prediction.to_dict()
    result["jobId"] = job.id
    result["completedAt"] = job.completed_at.isoformat() if job.completed_at else None
    return result


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, request: Request, user_id: int = Depends(current_user_id)):
    job = await request.app.state.worker.cancel(job_id, user_id)
    return {"status": "success", "message": "Job cancelled", "job": job.to_dict()}


# --- Stored predictions ---

@router.get("/predictions/me")
def my_predictions(request: Request, limit: int = Query(10, ge=1, le=100),
                   user_id: int = Depends(current_user_id)):
    found = request.app.state.predictions.list_by_user(user_id, limit)
    return {"status": "success", "count": len(found), "predictions": [p.to_dict() for p in found]}


@router.get("/predictions/me/latest")
def my_latest_prediction(request: Request, user_id: int = Depends(current_user_id)):
    prediction = request.app.state.predictions.latest(user_id)
    if prediction is None:
        raise NotFound("No predictions yet")
    return prediction.to_dict()


@router.get("/predictions/me/date-range")
def my_predictions_in_range(request: Request, start_date: date, end_date: date,
                            user_id: int = Depends(current_user_id)):
    start, end = _day_bounds(start_date, end_date)
    found = request.app.state.predictions.by_date_range(user_id, start, end)
    return {"status": "success", "count": len(found), "predictions": [p.to_dict() for p in found]}


@router.get("/predictions/me/score")
def my_daily_scores(request: Request, start_date: date, end_date: date,
                    user_id: int = Depends(current_user_id)):
    start, end = _day_bounds(start_date, end_date)
    return {"status": "success", "scores": request.app.state.predictions.daily_scores(user_id, start, end)}


@router.get("/predictions/{prediction_id}")
def get_prediction(prediction_id: int, request: Request, user_id: int = Depends(current_user_id)):
    prediction = request.app.state.predictions.get(user_id, prediction_id)
    if prediction is None:
        raise NotFound(f"Prediction {prediction_id} not found")
    return prediction.to_dict()


@router.delete("/predictions/{prediction_id}")
def delete_prediction(prediction_id: int, request: Request, user_id: int = Depends(current_user_id)):
    request.app.state.predictions.delete(user_id, prediction_id)
    return {"status": "success", "message": "Prediction deleted"}
