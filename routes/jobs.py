# routes/jobs.py
from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Response

from app.container import Services
from app.errors import MarketplaceError
from app.jobs.model import Job, JobDraft, Payment
from deps.auth import get_current_user, CurrentUser
from deps.services import get_services
from schemas import JobCreateRequest, JobOut, JobPostResponse, PaymentOut
from services.error_map import raise_http_from_domain_error

logger = logging.getLogger("gigpay.jobs")
router = APIRouter(prefix="/v1/jobs", tags=["jobs"])


def _job_out(job: Job) -> JobOut:
    return JobOut(
        job_id=job.id,
        poster_id=job.poster_id,
        title=job.title,
        description=job.description,
        skills=list(job.skills),
        category=job.category,
        payment_type=job.payment_type,
        payment_amount_cents=job.payment_amount_cents,
        platform_fee_cents=job.platform_fee_cents,
        total_amount_cents=job.total_amount_cents,
        status=job.status,
        created_at=job.created_at,
        payment_id=job.payment_id,
    )


def _payment_out(payment: Payment) -> PaymentOut:
    return PaymentOut(
        payment_id=payment.id,
        status=payment.status,
        amount_cents=payment.amount_cents,
        amount=payment.amount,
        currency=payment.currency,
        external_ref=payment.external_ref,
        completed_at=payment.completed_at,
        refunded_at=payment.refunded_at,
    )


@router.post("", response_model=JobPostResponse, status_code=201)
def post_job(
    body: JobCreateRequest,
    response: Response,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    draft = JobDraft(
        title=body.title,
        description=body.description,
        payment_type=body.payment_type,
        payment_amount_cents=body.payment_amount_cents,
        skills=tuple(body.skills),
        category=body.category,
    )
    try:
        outcome = services.postings.post_job(
            poster_id=user.user_id,
            draft=draft,
            payment_method_ref=body.payment_method_id,
            idempotency_key=idempotency_key,
        )
    except MarketplaceError as e:
        logger.info("job_post_rejected poster_id=%s code=%s", user.user_id, e.code)
        raise_http_from_domain_error(e)

    if outcome.replayed:
        response.status_code = 200
    return JobPostResponse(job=_job_out(outcome.job), payment=_payment_out(outcome.payment), replayed=outcome.replayed)


@router.get("/{job_id}", response_model=JobPostResponse)
def get_job(
    job_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    found = services.postings.get_job(job_id)
    # other posters' jobs look the same as missing ones
    if found is None or found[0].poster_id != user.user_id:
        raise HTTPException(status_code=404, detail="JOB_NOT_FOUND")
    job, payment = found
    return JobPostResponse(job=_job_out(job), payment=_payment_out(payment) if payment else None)
