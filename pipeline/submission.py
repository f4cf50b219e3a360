"""Shared envelope for metered agent work.

resolve ownership -> check agent config -> debit -> call agent -> record result.
Agent jobs that complete later are recorded as PROCESSING ``job`` rows keyed by
the agent's request id; synchronous tasks hand their output back to the caller,
which persists it and then calls ``finish_task``.
"""

from __future__ import annotations

from datetime import UTC, datetime
import logging
import os
from typing import Any, Callable, NoReturn
from uuid import UUID, uuid4

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from agents import AgentClient, AgentConfigError, AgentError, AgentFeature, AgentResult, get_agent_client
from agents.routes import get_feature, load_route
from billing import INSUFFICIENT_CREDITS, USER_NOT_FOUND, DebitResult, refund_debit, settle_debit, try_debit
from db.models import Channel, Job, VideoIdea

from .errors import AgentFailure, ConfigurationError, InsufficientCredits, NotFound, ValidationFailed
from .queue import enqueue_refund

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def refund_on_agent_failure() -> bool:
    return os.getenv("REFUND_ON_AGENT_FAILURE", "1").strip().lower() in {"1", "true", "yes"}


def resolve_channel(session: Session, *, user_id: str, channel_id: str | None) -> Channel:
    if not channel_id:
        raise ValidationFailed("channel_id is required")
    channel = session.execute(
        select(Channel).where(Channel.user_id == user_id, Channel.channel_id == channel_id)
    ).scalar_one_or_none()
    if channel is None:
        raise NotFound("Invalid channelId")
    return channel


def resolve_idea(session: Session, *, user_id: str, idea_id: UUID) -> VideoIdea:
    idea = session.execute(
        select(VideoIdea)
        .join(Channel, Channel.id == VideoIdea.channel_id)
        .where(VideoIdea.id == idea_id, Channel.user_id == user_id)
    ).scalar_one_or_none()
    if idea is None:
        raise NotFound("Idea not found")
    return idea


def release_debit(session: Session, transaction_id: UUID, *, reason: str) -> bool:
    """Refund a pending debit now, or queue the refund if the store rejects it."""
    try:
        return refund_debit(session, transaction_id, reason=reason).refunded
    except SQLAlchemyError:
        session.rollback()
        logger.exception("inline refund failed tx=%s; queueing retry", transaction_id)

    try:
        enqueue_refund(transaction_id, reason)
    except RedisError:
        logger.critical(
            "refund lost tx=%s reason=%s; debit stays pending until reconcile-debits runs",
            transaction_id,
            reason,
        )
    return False


def _configured_feature(name: str) -> AgentFeature:
    try:
        load_route(name)
    except AgentConfigError as exc:
        raise ConfigurationError(str(exc)) from exc
    return get_feature(name)


def _charge(session: Session, *, user_id: str, feature: AgentFeature) -> DebitResult | None:
    if feature.operation is None:
        return None
    debit = try_debit(session, user_id=user_id, operation=feature.operation, note=feature.name)
    if debit.success:
        return debit
    if debit.error == USER_NOT_FOUND:
        raise NotFound(USER_NOT_FOUND)
    raise InsufficientCredits(debit.error or INSUFFICIENT_CREDITS)


def fail_agent_call(session: Session, debit: DebitResult | None, exc: AgentError) -> NoReturn:
    """Apply the refund policy to a debit whose agent call failed, then raise."""
    session.rollback()
    refunded = False
    if debit is not None and debit.transaction_id is not None:
        if refund_on_agent_failure():
            refunded = release_debit(session, debit.transaction_id, reason=f"agent_failure:{exc.code}")
        else:
            settle_debit(session, debit.transaction_id)
            session.commit()
    logger.warning(
        "agent call failed feature=%s code=%s credits_refunded=%s",
        exc.feature,
        exc.code,
        refunded,
    )
    raise AgentFailure(
        "External agent error",
        details={"code": exc.code, "message": exc.message, "upstream": exc.details, "credits_refunded": refunded},
    ) from exc


def submit_agent_job(
    session: Session,
    *,
    user_id: str,
    channel: Channel,
    feature: str,
    payload: dict[str, Any],
    kind: str,
    client: AgentClient | None = None,
    attach: Callable[[Job], None] | None = None,
    **job_fields: Any,
) -> Job:
    """Debit, hand the job to the agent and record it as PROCESSING.

    ``attach`` adds dependent rows for the new job; they are committed together
    with the job and the settled debit.
    """
    agent_feature = _configured_feature(feature)
    channel_pk = channel.id
    client = client or get_agent_client()

    debit = _charge(session, user_id=user_id, feature=agent_feature)
    try:
        accepted = client.submit_job(agent_feature.name, payload)
    except AgentError as exc:
        fail_agent_call(session, debit, exc)

    job = Job(
        id=uuid4(),
        kind=kind,
        generator_id=accepted.request_id,
        status="PROCESSING",
        user_id=user_id,
        channel_id=channel_pk,
        credits_charged=debit.amount if debit is not None else 0,
        **job_fields,
    )
    session.add(job)
    try:
        session.flush()
    except IntegrityError:
        fail_agent_call(
            session,
            debit,
            AgentError(
                code="duplicate_request_id",
                message="External agent reused an existing request_id",
                feature=agent_feature.name,
                details={"request_id": accepted.request_id},
            ),
        )
    if attach is not None:
        attach(job)
    if debit is not None and debit.transaction_id is not None:
        settle_debit(session, debit.transaction_id, job_id=job.id)
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("job not recorded kind=%s generator_id=%s", kind, accepted.request_id)
        if debit is not None and debit.transaction_id is not None:
            release_debit(session, debit.transaction_id, reason="job_not_recorded")
        raise
    logger.info(
        "job submitted kind=%s generator_id=%s job=%s user=%s",
        kind,
        job.generator_id,
        job.id,
        user_id,
    )
    return job


def run_agent_task(
    session: Session,
    *,
    user_id: str,
    feature: str,
    payload: dict[str, Any],
    client: AgentClient | None = None,
) -> tuple[AgentResult, DebitResult | None]:
    """Debit and call a synchronous agent feature; the caller persists and calls ``finish_task``."""
    agent_feature = _configured_feature(feature)
    client = client or get_agent_client()

    debit = _charge(session, user_id=user_id, feature=agent_feature)
    try:
        result = client.run_task(agent_feature.name, payload)
    except AgentError as exc:
        fail_agent_call(session, debit, exc)
    return result, debit


def reject_task_output(session: Session, debit: DebitResult | None, feature: str, output: Any) -> NoReturn:
    fail_agent_call(
        session,
        debit,
        AgentError(
            code="invalid_output",
            message="Unexpected result shape in external response",
            feature=feature,
            details=output,
        ),
    )


def finish_task(session: Session, debit: DebitResult | None) -> None:
    if debit is not None and debit.transaction_id is not None:
        settle_debit(session, debit.transaction_id)
    session.commit()


def create_local_job(
    session: Session,
    *,
    user_id: str,
    channel_pk: UUID,
    kind: str,
    prefix: str,
    **job_fields: Any,
) -> Job:
    """Record work that needs no agent (uploads, drafts) as already COMPLETED. Does not commit."""
    now = _utcnow()
    job = Job(
        id=uuid4(),
        kind=kind,
        generator_id=f"{prefix}_{uuid4()}",
        status="COMPLETED",
        user_id=user_id,
        channel_id=channel_pk,
        completed_at=now,
        **job_fields,
    )
    session.add(job)
    return job
