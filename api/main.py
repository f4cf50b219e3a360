from __future__ import annotations

from datetime import datetime, timezone
import logging
from os import getenv
from typing import Any, List, Literal, Optional
from uuid import UUID

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import desc, func, select, text
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from agents import get_agent_client
from billing import get_balance, grant_credits, load_cost_table
from db.models import Channel, CreditTransaction, Job, SimilarChannel, UserAccount, VideoIdea
from db.session import SessionLocal
from pipeline import features
from pipeline.completion import handle_callback
from pipeline.errors import Conflict, NotFound, ServiceError, Unauthorized
from pipeline.submission import resolve_channel

logging.basicConfig(
    level=getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Thryve API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def _service_error_handler(_request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()))


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _paginate(limit: int, offset: int) -> tuple[int, int]:
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    return limit, offset


def _require_operator(x_operator_token: str | None = Header(default=None)) -> None:
    expected = getenv("OPERATOR_TOKEN", "")
    if not expected:
        if getenv("ALLOW_OPS_WITHOUT_TOKEN", "0") == "1":
            return
        raise HTTPException(status_code=503, detail="operator_token_missing")
    if x_operator_token != expected:
        raise HTTPException(status_code=401, detail="operator_token_required")


def _current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    # The upstream auth gateway verifies the session and forwards the identity id.
    if not x_user_id or not x_user_id.strip():
        raise Unauthorized("Unauthorized")
    return x_user_id.strip()


def _require_webhook_token(x_webhook_token: str | None = Header(default=None)) -> None:
    expected = getenv("WEBHOOK_TOKEN", "")
    if expected and x_webhook_token != expected:
        raise Unauthorized("Invalid webhook token")


def _worker_state() -> dict:
    try:
        from rq import Worker
        from pipeline.queue import get_queue, get_redis

        redis = get_redis()
        redis.ping()
        workers = Worker.all(connection=redis)
        return {
            "redis_ok": True,
            "online": len(workers) > 0,
            "worker_count": len(workers),
            "refund_queue_depth": get_queue("billing").count,
        }
    except Exception:
        return {
            "redis_ok": False,
            "online": False,
            "worker_count": 0,
            "refund_queue_depth": None,
        }


def _service_status(name: str, ok: bool, details: str | None = None) -> dict:
    return {
        "service": name,
        "status": "ok" if ok else "down",
        "details": details,
    }


def _repo_counts(session, model, status_col=None) -> dict:
    total = session.execute(select(func.count()).select_from(model)).scalar_one()
    payload = {"total": int(total), "by_status": {}}
    if status_col is not None:
        rows = session.execute(select(status_col, func.count()).group_by(status_col)).all()
        payload["by_status"] = {str(status or "unknown"): int(count) for status, count in rows}
    return payload


def _user_row(user: UserAccount) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "image_url": user.image_url,
        "credits": user.credits,
    }


def _channel_row(channel: Channel) -> dict:
    return {
        "id": channel.id,
        "channel_id": channel.channel_id,
        "title": channel.title,
        "description": channel.description,
        "thumbnail_url": channel.thumbnail_url,
        "subscriber_count": channel.subscriber_count,
        "video_count": channel.video_count,
        "view_count": channel.view_count,
        "created_at": channel.created_at,
        "updated_at": channel.updated_at,
    }


class UserProfileRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    image_url: str | None = None


class ChannelCreateRequest(BaseModel):
    channel_id: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None
    thumbnail_url: str | None = None
    subscriber_count: int | None = Field(default=None, ge=0)
    video_count: int | None = Field(default=None, ge=0)
    view_count: int | None = Field(default=None, ge=0)


class AudioGenerateRequest(BaseModel):
    channel_id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    ref_audio_url: str = Field(min_length=1)
    title: str | None = None


class ThumbnailGenerateRequest(BaseModel):
    channel_id: str = Field(min_length=1)
    images: List[str] | None = None
    prompt: str | None = None
    title: str | None = None


class ReelCreateRequest(BaseModel):
    channel_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str | None = None
    video_idea_id: UUID | None = None
    prompt: str | None = None
    image_urls: List[str] | None = None


class AssetCreateRequest(BaseModel):
    channel_id: str = Field(min_length=1)
    url: str = Field(min_length=1)
    asset_type: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None


class SimilarDiscoverRequest(BaseModel):
    owner_channel_id: str = Field(min_length=1)


class IdeaCreateRequest(BaseModel):
    channel_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str | None = None


class IdeaGenerateRequest(BaseModel):
    channel_id: str = Field(min_length=1)
    context: str | None = None
    count: int = Field(default=5, ge=1, le=20)


class IdeaPlanRequest(BaseModel):
    context: str = Field(min_length=1)
    schedule_data: Any = None


class IdeaSeoRequest(BaseModel):
    context: str | None = None


class CtrPredictRequest(BaseModel):
    channel_id: str = Field(min_length=1)
    thumbnail_url: str = Field(min_length=1)
    title: str = Field(min_length=1)


class CommentCritiqueRequest(BaseModel):
    yt_video_id: str = Field(min_length=1)


class CreditGrantRequest(BaseModel):
    amount: int = Field(ge=1)
    note: str | None = None


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/system/status")
def system_status() -> dict:
    updated_at = _utc_now()
    partial_failures: list[str] = []
    worker = _worker_state()
    services = [
        _service_status("api", True),
        _service_status("redis", bool(worker["redis_ok"]), None if worker["redis_ok"] else "ping_failed"),
        _service_status("worker", bool(worker["online"]), f"count={worker['worker_count']}"),
    ]
    if not worker["redis_ok"]:
        partial_failures.append("redis_unavailable")

    repo_counts: dict[str, Any] = {
        "jobs": {"total": None, "by_status": {}},
        "pending_debits": None,
    }
    session = SessionLocal()
    try:
        session.execute(text("select 1"))
        services.append(_service_status("postgres", True))
        repo_counts["jobs"] = _repo_counts(session, Job, Job.status)
        repo_counts["pending_debits"] = int(
            session.execute(
                select(func.count())
                .select_from(CreditTransaction)
                .where(CreditTransaction.kind == "debit", CreditTransaction.status == "pending")
            ).scalar_one()
        )
    except Exception as exc:
        services.append(_service_status("postgres", False, "query_failed"))
        partial_failures.append(f"postgres_unavailable:{type(exc).__name__}")
    finally:
        session.close()

    return jsonable_encoder(
        {
            "service_status": services,
            "repo_counts": repo_counts,
            "refund_queue_depth": worker["refund_queue_depth"],
            "updated_at": updated_at,
            "partial_failures": partial_failures,
        }
    )


@app.get("/users/me")
def get_me(user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        user = session.get(UserAccount, user_id)
        if user is None:
            raise NotFound("User not found")
        return jsonable_encoder({"user": _user_row(user)})
    finally:
        session.close()


@app.post("/users/me")
def upsert_me(req: UserProfileRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        profile = {field: value for field, value in req.model_dump().items() if value is not None}
        user = session.get(UserAccount, user_id)
        created = user is None
        if created:
            session.add(UserAccount(id=user_id, credits=0, **profile))
            try:
                session.commit()
            except IntegrityError:
                # A concurrent first request created the account; update it instead.
                session.rollback()
                created = False
                user = session.get(UserAccount, user_id)
        if not created:
            for field, value in profile.items():
                setattr(user, field, value)
            session.commit()
        signup_credits = int(getenv("SIGNUP_CREDITS", "0") or 0)
        if created and signup_credits > 0:
            grant_credits(session, user_id=user_id, amount=signup_credits, note="signup")
        user = session.get(UserAccount, user_id)
        return jsonable_encoder({"user": _user_row(user), "created": created})
    finally:
        session.close()


@app.get("/channels")
def list_channels(user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        rows = session.execute(
            select(Channel).where(Channel.user_id == user_id).order_by(desc(Channel.created_at))
        ).scalars().all()
        return jsonable_encoder({"channels": [_channel_row(row) for row in rows], "total": len(rows)})
    finally:
        session.close()


@app.post("/channels")
def create_channel(req: ChannelCreateRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        if session.get(UserAccount, user_id) is None:
            raise NotFound("User not found")
        existing = session.execute(
            select(Channel.id).where(Channel.user_id == user_id, Channel.channel_id == req.channel_id)
        ).scalar_one_or_none()
        if existing is not None:
            raise Conflict("Channel already registered")
        channel = Channel(user_id=user_id, **req.model_dump())
        session.add(channel)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise Conflict("Channel already registered") from exc
        return jsonable_encoder({"channel": _channel_row(channel)})
    finally:
        session.close()


@app.post("/audio/generate")
def generate_audio(req: AudioGenerateRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(
            features.generate_audio(
                session,
                user_id=user_id,
                channel_id=req.channel_id,
                text=req.text,
                ref_audio_url=req.ref_audio_url,
                title=req.title,
                client=get_agent_client(),
            )
        )
    finally:
        session.close()


@app.post("/thumbnails")
def generate_thumbnail(req: ThumbnailGenerateRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(
            features.generate_thumbnail(
                session,
                user_id=user_id,
                channel_id=req.channel_id,
                images=req.images,
                prompt=req.prompt,
                title=req.title,
                client=get_agent_client(),
            )
        )
    finally:
        session.close()


@app.post("/reels")
def create_reel(req: ReelCreateRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(
            features.generate_reel(
                session,
                user_id=user_id,
                channel_id=req.channel_id,
                title=req.title,
                description=req.description,
                video_idea_id=req.video_idea_id,
                prompt=req.prompt,
                image_urls=req.image_urls,
                client=get_agent_client(),
            )
        )
    finally:
        session.close()


@app.post("/assets")
def create_asset(req: AssetCreateRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(
            features.upload_asset(
                session,
                user_id=user_id,
                channel_id=req.channel_id,
                url=req.url,
                asset_type=req.asset_type,
                title=req.title,
                description=req.description,
            )
        )
    finally:
        session.close()


@app.post("/channels/similar/discover")
def discover_similar(req: SimilarDiscoverRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(
            features.discover_similar_channels(
                session,
                user_id=user_id,
                owner_channel_id=req.owner_channel_id,
                client=get_agent_client(),
            )
        )
    finally:
        session.close()


@app.post("/ideas")
def create_idea(req: IdeaCreateRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        channel = resolve_channel(session, user_id=user_id, channel_id=req.channel_id)
        idea = VideoIdea(channel_id=channel.id, title=req.title, description=req.description, source="manual")
        session.add(idea)
        session.commit()
        return jsonable_encoder({"idea": features.idea_row(idea)})
    finally:
        session.close()


@app.post("/ideas/generate")
def generate_ideas(req: IdeaGenerateRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(
            features.generate_ideas(
                session,
                user_id=user_id,
                channel_id=req.channel_id,
                context=req.context,
                count=req.count,
                client=get_agent_client(),
            )
        )
    finally:
        session.close()


@app.post("/ideas/{idea_id}/plan")
def generate_idea_plan(idea_id: UUID, req: IdeaPlanRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(
            features.generate_idea_plan(
                session,
                user_id=user_id,
                idea_id=idea_id,
                context=req.context,
                schedule_data=req.schedule_data,
                client=get_agent_client(),
            )
        )
    finally:
        session.close()


@app.post("/ideas/{idea_id}/seo")
def generate_idea_seo(idea_id: UUID, req: IdeaSeoRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(
            features.generate_idea_seo(
                session,
                user_id=user_id,
                idea_id=idea_id,
                context=req.context,
                client=get_agent_client(),
            )
        )
    finally:
        session.close()


@app.post("/ctr/predict")
def predict_ctr(req: CtrPredictRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(
            features.predict_ctr(
                session,
                user_id=user_id,
                channel_id=req.channel_id,
                thumbnail_url=req.thumbnail_url,
                title=req.title,
                client=get_agent_client(),
            )
        )
    finally:
        session.close()


@app.post("/videos/comments/critique")
def critique_comments(req: CommentCritiqueRequest, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(
            features.critique_comments(
                session,
                user_id=user_id,
                yt_video_id=req.yt_video_id,
                client=get_agent_client(),
            )
        )
    finally:
        session.close()


@app.post("/webhook")
def agent_webhook(
    body: dict = Body(...),
    _guard: None = Depends(_require_webhook_token),
) -> dict:
    session = SessionLocal()
    try:
        handle_callback(session, body)
        return {"success": True}
    finally:
        session.close()


@app.get("/jobs")
def list_jobs(
    channel_id: Optional[str] = None,
    kind: Optional[Literal["asset", "thumbnail", "reel", "reel_asset"]] = None,
    status: Optional[Literal["PROCESSING", "COMPLETED", "FAILED"]] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(_current_user_id),
) -> dict:
    limit, offset = _paginate(limit, offset)
    session = SessionLocal()
    try:
        stmt = select(Job, Channel).join(Channel, Channel.id == Job.channel_id).where(Channel.user_id == user_id)
        if channel_id:
            resolve_channel(session, user_id=user_id, channel_id=channel_id)
            stmt = stmt.where(Channel.channel_id == channel_id)
        if kind:
            stmt = stmt.where(Job.kind == kind)
        if status:
            stmt = stmt.where(Job.status == status)
        stmt = stmt.order_by(desc(Job.created_at)).limit(limit).offset(offset)
        rows = session.execute(stmt).all()
        return jsonable_encoder({"jobs": [features.job_row(job, channel) for job, channel in rows]})
    finally:
        session.close()


@app.get("/jobs/{job_id}")
def get_job(job_id: UUID, user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        row = session.execute(
            select(Job, Channel)
            .join(Channel, Channel.id == Job.channel_id)
            .where(Job.id == job_id, Channel.user_id == user_id)
        ).first()
        if row is None:
            raise NotFound("Job not found")
        job, channel = row
        return jsonable_encoder({"job": features.job_row(job, channel)})
    finally:
        session.close()


@app.get("/reels")
def list_reels(channel_id: str = Query(...), user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        channel = resolve_channel(session, user_id=user_id, channel_id=channel_id)
        reels = session.execute(
            select(Job)
            .where(Job.channel_id == channel.id, Job.kind == "reel")
            .order_by(desc(Job.created_at))
        ).scalars().all()
        idea_ids = {reel.video_idea_id for reel in reels if reel.video_idea_id is not None}
        ideas = {}
        if idea_ids:
            ideas = {
                idea.id: idea
                for idea in session.execute(select(VideoIdea).where(VideoIdea.id.in_(idea_ids))).scalars()
            }
        payload = []
        for reel in reels:
            row = features.job_row(reel, channel)
            idea = ideas.get(reel.video_idea_id)
            row["video_idea"] = {"title": idea.title, "description": idea.description} if idea else None
            row["reel_assets"] = [features.job_row(asset) for asset in reel.children]
            payload.append(row)
        return jsonable_encoder({"reels": payload, "total_reels": len(payload)})
    finally:
        session.close()


@app.get("/assets/audio")
def list_audio_assets(channel_id: str = Query(...), user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        channel = resolve_channel(session, user_id=user_id, channel_id=channel_id)
        assets = session.execute(
            select(Job)
            .where(Job.channel_id == channel.id, Job.kind == "asset", Job.asset_type == "mp3")
            .order_by(desc(Job.created_at))
        ).scalars().all()
        return jsonable_encoder(
            {"assets": [features.job_row(asset, channel) for asset in assets], "total_assets": len(assets)}
        )
    finally:
        session.close()


@app.get("/thumbnails")
def list_thumbnails(
    channel_id: Optional[str] = None,
    status: Literal["PROCESSING", "COMPLETED", "FAILED"] = "COMPLETED",
    user_id: str = Depends(_current_user_id),
) -> dict:
    session = SessionLocal()
    try:
        stmt = (
            select(Job, Channel)
            .join(Channel, Channel.id == Job.channel_id)
            .where(Channel.user_id == user_id, Job.kind == "thumbnail", Job.status == status)
        )
        if channel_id:
            stmt = stmt.where(Channel.channel_id == channel_id)
        rows = session.execute(stmt.order_by(desc(Job.created_at))).all()
        return jsonable_encoder({"thumbnails": [features.job_row(job, channel) for job, channel in rows]})
    finally:
        session.close()


@app.get("/channels/similar")
def list_similar_channels(owner_channel_id: str = Query(...), user_id: str = Depends(_current_user_id)) -> dict:
    session = SessionLocal()
    try:
        resolve_channel(session, user_id=user_id, channel_id=owner_channel_id)
        rows = session.execute(
            select(SimilarChannel)
            .where(SimilarChannel.owner_channel_id == owner_channel_id)
            .order_by(SimilarChannel.rank)
        ).scalars().all()
        results = [
            {
                "channel_id": row.similar_channel_id,
                "rank": row.rank,
                "relevance_score": row.relevance_score,
                "reasoning": row.reasoning,
                "updated_at": row.updated_at,
            }
            for row in rows
        ]
        return jsonable_encoder({"results": results, "total": len(results)})
    finally:
        session.close()


@app.get("/ideas")
def list_ideas(
    channel_id: str = Query(...),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(_current_user_id),
) -> dict:
    limit, offset = _paginate(limit, offset)
    session = SessionLocal()
    try:
        channel = resolve_channel(session, user_id=user_id, channel_id=channel_id)
        ideas = session.execute(
            select(VideoIdea)
            .where(VideoIdea.channel_id == channel.id)
            .order_by(desc(VideoIdea.created_at))
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return jsonable_encoder({"ideas": [features.idea_row(idea) for idea in ideas]})
    finally:
        session.close()


@app.get("/credits/costs")
def list_credit_costs() -> dict:
    table = load_cost_table()
    return {
        "costs": {
            name: {"cost": entry.cost, "description": entry.description}
            for name, entry in sorted(table.items())
        }
    }


@app.get("/credits/transactions")
def list_credit_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(_current_user_id),
) -> dict:
    limit, offset = _paginate(limit, offset)
    session = SessionLocal()
    try:
        balance = get_balance(session, user_id)
        if balance is None:
            raise NotFound("User not found")
        rows = session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(desc(CreditTransaction.created_at))
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        transactions = [
            {
                "id": row.id,
                "kind": row.kind,
                "operation": row.operation,
                "amount": row.amount,
                "balance_after": row.balance_after,
                "status": row.status,
                "job_id": row.job_id,
                "note": row.note,
                "created_at": row.created_at,
            }
            for row in rows
        ]
        return jsonable_encoder({"credits": balance, "transactions": transactions})
    finally:
        session.close()


@app.post("/ops/users/{target_user_id}/credits")
def ops_grant_credits(
    target_user_id: str,
    req: CreditGrantRequest,
    _guard: None = Depends(_require_operator),
) -> dict:
    session = SessionLocal()
    try:
        try:
            balance = grant_credits(session, user_id=target_user_id, amount=req.amount, note=req.note)
        except LookupError as exc:
            raise NotFound("User not found") from exc
        return {"user_id": target_user_id, "credits": balance}
    finally:
        session.close()
