"""Agent completion callbacks.

Agents report the outcome of a job out of band, naming it only by the request
id they issued. The id is looked up in the single ``job`` table; the transition
out of PROCESSING is one conditional update, so concurrent or repeated
deliveries of the same callback apply at most once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from db.models import Job

from .errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

_RESULT_KEYS = ("images", "video", "audio")


@dataclass(frozen=True)
class CallbackOutcome:
    job_id: UUID
    generator_id: str
    status: str
    applied: bool


def extract_request_id(body: dict[str, Any]) -> str | None:
    for key in ("request_id", "gateway_request_id"):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_result_url(body: dict[str, Any]) -> str | None:
    payload = body.get("payload")
    if not isinstance(payload, dict):
        return None
    for key in _RESULT_KEYS:
        items = payload.get(key)
        if not isinstance(items, list) or not items:
            continue
        first = items[0]
        if isinstance(first, dict) and isinstance(first.get("url"), str) and first["url"]:
            return first["url"]
    return None


def normalize_status(raw: Any) -> str:
    if isinstance(raw, str) and raw.upper() == "OK":
        return "COMPLETED"
    return "FAILED"


def handle_callback(session: Session, body: dict[str, Any]) -> CallbackOutcome:
    request_id = extract_request_id(body)
    if request_id is None:
        raise ValidationFailed("request_id is required")

    result_url = extract_result_url(body)
    new_status = normalize_status(body.get("status"))
    now = datetime.now(UTC)

    values: dict[str, Any] = {
        "status": new_status,
        "result": body.get("payload") if isinstance(body.get("payload"), dict) else None,
        "completed_at": now,
        "updated_at": now,
    }
    if result_url:
        values["url"] = result_url

    applied = session.execute(
        update(Job)
        .where(Job.generator_id == request_id, Job.status == "PROCESSING")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if applied.rowcount == 1:
        session.commit()
        job_id = session.execute(
            select(Job.id).where(Job.generator_id == request_id)
        ).scalar_one()
        logger.info("job completed generator_id=%s status=%s job=%s", request_id, new_status, job_id)
        return CallbackOutcome(job_id=job_id, generator_id=request_id, status=new_status, applied=True)

    session.rollback()
    job = session.execute(select(Job).where(Job.generator_id == request_id)).scalar_one_or_none()
    if job is None:
        logger.warning("callback for unknown request_id=%s", request_id)
        raise NotFound("No matching record found for request_id")

    if job.status != new_status or (result_url and job.url != result_url):
        logger.warning(
            "duplicate callback disagrees with stored state generator_id=%s stored=%s/%s incoming=%s/%s",
            request_id,
            job.status,
            job.url,
            new_status,
            result_url,
        )
    else:
        logger.info("duplicate callback ignored generator_id=%s status=%s", request_id, job.status)
    return CallbackOutcome(job_id=job.id, generator_id=request_id, status=job.status, applied=False)
