from __future__ import annotations

import json
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from agents import AgentClient
from db.models import Channel, Job, SimilarChannel, VideoIdea

from .errors import NotFound, ValidationFailed
from .submission import (
    create_local_job,
    finish_task,
    reject_task_output,
    resolve_channel,
    resolve_idea,
    run_agent_task,
    submit_agent_job,
)

logger = logging.getLogger(__name__)

THUMBNAIL_STYLE_PROMPT = (
    "Create an ultra HD 4K YouTube thumbnail image in a high-impact cinematic style "
    "using ONLY the provided images as sources. Do not include any text, numbers, or "
    "watermarks, only visuals. Ensure the composition has a clear central subject, "
    "dramatic lighting, vibrant contrast, and sharp edge definition. Match the "
    "platform-accurate 16:9 aspect ratio and enhance clarity for maximum thumbnail appeal."
)

COMMENT_CRITIQUE_PROMPT = (
    "Analyze the following YouTube video comments carefully. Identify the actual issues "
    "viewers are pointing out with my videos. Go beyond surface-level sentiment and focus "
    "on constructive criticism or recurring complaints. Highlight specific problems related "
    "to video quality (audio, visuals, editing, pacing), content quality (clarity, depth, "
    "accuracy, usefulness), presentation (tone, energy, communication style), or technical "
    "issues (length, captions, accessibility, clickbait). Provide a clear breakdown of the "
    "issues mentioned, patterns across multiple comments, and actionable suggestions."
)

_VIDEO_EXTENSIONS = (".mp4", ".webm", ".mov", ".avi")


def _job_ack(job: Job) -> dict:
    return {
        "success": True,
        "job_id": job.id,
        "generator_id": job.generator_id,
        "request_id": job.generator_id if job.status == "PROCESSING" else None,
        "status": job.status,
    }


def _media_asset_type(url: str) -> str:
    lowered = url.lower()
    return "mp4" if any(ext in lowered for ext in _VIDEO_EXTENSIONS) else "image"


def generate_audio(
    session: Session,
    *,
    user_id: str,
    channel_id: str,
    text: str,
    ref_audio_url: str,
    title: str | None = None,
    client: AgentClient | None = None,
) -> dict:
    if not text.strip() or not ref_audio_url.strip():
        raise ValidationFailed("channel_id, text, and ref_audio_url are required")
    channel = resolve_channel(session, user_id=user_id, channel_id=channel_id)
    job = submit_agent_job(
        session,
        user_id=user_id,
        channel=channel,
        feature="audio",
        payload={"text": text, "ref_audio_url": ref_audio_url},
        kind="asset",
        client=client,
        asset_type="mp3",
        title=title,
    )
    return _job_ack(job)


def generate_thumbnail(
    session: Session,
    *,
    user_id: str,
    channel_id: str,
    images: list[str] | None = None,
    prompt: str | None = None,
    title: str | None = None,
    client: AgentClient | None = None,
) -> dict:
    channel = resolve_channel(session, user_id=user_id, channel_id=channel_id)
    sources = [url for url in (images or []) if url]
    if not sources and channel.thumbnail_url:
        sources = [channel.thumbnail_url]
    if not sources:
        raise ValidationFailed("No images available to generate thumbnail")

    final_prompt = "\n\n".join(part for part in ((prompt or "").strip(), THUMBNAIL_STYLE_PROMPT) if part)
    job = submit_agent_job(
        session,
        user_id=user_id,
        channel=channel,
        feature="thumbnail",
        payload={"images": sources, "prompt": final_prompt},
        kind="thumbnail",
        client=client,
        title=title,
        asset_type="image",
    )
    return _job_ack(job)


def generate_reel(
    session: Session,
    *,
    user_id: str,
    channel_id: str,
    title: str,
    description: str | None = None,
    video_idea_id: UUID | None = None,
    prompt: str | None = None,
    image_urls: list[str] | None = None,
    client: AgentClient | None = None,
) -> dict:
    """Submit a reel to the agent, or save a local draft when there is nothing to render.

    Supplied media are recorded as ``reel_asset`` children of the reel. A draft
    (no prompt or no media) is not charged.
    """
    if not title.strip():
        raise ValidationFailed("channel_id and title are required")
    channel = resolve_channel(session, user_id=user_id, channel_id=channel_id)
    channel_pk = channel.id
    if video_idea_id is not None:
        idea = session.get(VideoIdea, video_idea_id)
        if idea is None or idea.channel_id != channel_pk:
            raise NotFound("Idea not found")

    media = [url for url in (image_urls or []) if url]
    fields = {"title": title, "description": description, "video_idea_id": video_idea_id}

    def attach_media(reel: Job) -> None:
        for url in media:
            create_local_job(
                session,
                user_id=user_id,
                channel_pk=channel_pk,
                kind="reel_asset",
                prefix="reel_asset",
                parent_job_id=reel.id,
                url=url,
                asset_type=_media_asset_type(url),
            )

    if prompt and prompt.strip() and media:
        reel = submit_agent_job(
            session,
            user_id=user_id,
            channel=channel,
            feature="reel",
            payload={"prompt": prompt, "image_urls": media},
            kind="reel",
            client=client,
            attach=attach_media,
            asset_type="mp4",
            **fields,
        )
    else:
        reel = create_local_job(
            session,
            user_id=user_id,
            channel_pk=channel_pk,
            kind="reel",
            prefix="reel",
            **fields,
        )
        session.flush()
        attach_media(reel)
        session.commit()
    return _job_ack(reel)


def upload_asset(
    session: Session,
    *,
    user_id: str,
    channel_id: str,
    url: str,
    asset_type: str,
    title: str | None = None,
    description: str | None = None,
) -> dict:
    if not url.strip() or not asset_type.strip():
        raise ValidationFailed("channel_id, url, asset_type required")
    channel = resolve_channel(session, user_id=user_id, channel_id=channel_id)
    job = create_local_job(
        session,
        user_id=user_id,
        channel_pk=channel.id,
        kind="asset",
        prefix="upl",
        url=url,
        asset_type=asset_type,
        title=title,
        description=description,
    )
    session.commit()
    return _job_ack(job)


def _coerce_rank(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    return 0


def upsert_similar_channels(session: Session, *, owner_channel_id: str, competitors: list[Any]) -> int:
    """Insert or update one association per competitor, keyed by (owner, similar). Does not commit."""
    by_id: dict[str, dict] = {}
    for item in competitors:
        if not isinstance(item, dict):
            continue
        similar_id = item.get("channel_id")
        if isinstance(similar_id, str) and similar_id and similar_id not in by_id:
            by_id[similar_id] = item
    if not by_id:
        return 0

    existing = {
        row.similar_channel_id: row
        for row in session.execute(
            select(SimilarChannel).where(
                SimilarChannel.owner_channel_id == owner_channel_id,
                SimilarChannel.similar_channel_id.in_(list(by_id)),
            )
        ).scalars()
    }
    for similar_id, item in by_id.items():
        rank = _coerce_rank(item.get("rank"))
        relevance = item.get("relevance_score") or "unknown"
        reasoning = item.get("reasoning") or None
        row = existing.get(similar_id)
        if row is None:
            session.add(
                SimilarChannel(
                    owner_channel_id=owner_channel_id,
                    similar_channel_id=similar_id,
                    rank=rank,
                    relevance_score=str(relevance),
                    reasoning=reasoning,
                )
            )
        else:
            row.rank = rank
            row.relevance_score = str(relevance)
            row.reasoning = reasoning
    return len(by_id)


def discover_similar_channels(
    session: Session,
    *,
    user_id: str,
    owner_channel_id: str,
    client: AgentClient | None = None,
) -> dict:
    resolve_channel(session, user_id=user_id, channel_id=owner_channel_id)
    result, debit = run_agent_task(
        session,
        user_id=user_id,
        feature="similar_discover",
        payload={"yt_channel_id": owner_channel_id},
        client=client,
    )
    if not isinstance(result.output, list):
        reject_task_output(session, debit, "similar_discover", result.output)
    count = upsert_similar_channels(session, owner_channel_id=owner_channel_id, competitors=result.output)
    finish_task(session, debit)
    logger.info("similar channels discovered owner=%s count=%s", owner_channel_id, count)
    return {"success": True, "similar_count": count}


def _idea_items(output: Any) -> list[dict] | None:
    if isinstance(output, str):
        try:
            output = json.loads(output)
        except json.JSONDecodeError:
            return None
    if isinstance(output, dict):
        output = output.get("ideas")
    if not isinstance(output, list):
        return None
    items: list[dict] = []
    for entry in output:
        if isinstance(entry, str) and entry.strip():
            items.append({"title": entry.strip()})
        elif isinstance(entry, dict) and isinstance(entry.get("title"), str) and entry["title"].strip():
            items.append(entry)
    return items


def generate_ideas(
    session: Session,
    *,
    user_id: str,
    channel_id: str,
    context: str | None = None,
    count: int = 5,
    client: AgentClient | None = None,
) -> dict:
    channel = resolve_channel(session, user_id=user_id, channel_id=channel_id)
    channel_pk = channel.id
    payload = {
        "channel_id": channel.channel_id,
        "channel_title": channel.title,
        "context": context,
        "count": count,
    }
    result, debit = run_agent_task(
        session,
        user_id=user_id,
        feature="ideas_generate",
        payload=payload,
        client=client,
    )
    items = _idea_items(result.output)
    if not items:
        reject_task_output(session, debit, "ideas_generate", result.output)

    ideas = [
        VideoIdea(
            channel_id=channel_pk,
            title=item["title"].strip(),
            description=item.get("description") if isinstance(item.get("description"), str) else None,
            source="agent",
        )
        for item in items[:count]
    ]
    session.add_all(ideas)
    session.flush()
    finish_task(session, debit)
    return {"success": True, "ideas": [idea_row(idea) for idea in ideas]}


def generate_idea_plan(
    session: Session,
    *,
    user_id: str,
    idea_id: UUID,
    context: str,
    schedule_data: Any = None,
    client: AgentClient | None = None,
) -> dict:
    if not context.strip():
        raise ValidationFailed("idea_id and context are required")
    idea = resolve_idea(session, user_id=user_id, idea_id=idea_id)
    idea_pk = idea.id
    result, debit = run_agent_task(
        session,
        user_id=user_id,
        feature="idea_plan",
        payload={"context": context, "scheduleData": schedule_data},
        client=client,
    )
    idea = session.get(VideoIdea, idea_pk)
    idea.plan = result.output
    finish_task(session, debit)
    return {"success": True, "idea_id": idea_pk, "plan": result.output}


def generate_idea_seo(
    session: Session,
    *,
    user_id: str,
    idea_id: UUID,
    context: str | None = None,
    client: AgentClient | None = None,
) -> dict:
    idea = resolve_idea(session, user_id=user_id, idea_id=idea_id)
    idea_pk = idea.id
    payload = {"title": idea.title, "description": idea.description, "context": context}
    result, debit = run_agent_task(
        session,
        user_id=user_id,
        feature="idea_seo",
        payload=payload,
        client=client,
    )
    idea = session.get(VideoIdea, idea_pk)
    idea.seo = result.output
    finish_task(session, debit)
    return {"success": True, "idea_id": idea_pk, "seo": result.output}


def predict_ctr(
    session: Session,
    *,
    user_id: str,
    channel_id: str,
    thumbnail_url: str,
    title: str,
    client: AgentClient | None = None,
) -> dict:
    if not thumbnail_url.strip() or not title.strip():
        raise ValidationFailed("thumbnail_url and title are required")
    resolve_channel(session, user_id=user_id, channel_id=channel_id)
    result, debit = run_agent_task(
        session,
        user_id=user_id,
        feature="ctr_predict",
        payload={"channel_id": channel_id, "thumbnail_url": thumbnail_url, "title": title},
        client=client,
    )
    finish_task(session, debit)
    return {"success": True, "prediction": result.output}


def critique_comments(
    session: Session,
    *,
    user_id: str,
    yt_video_id: str,
    client: AgentClient | None = None,
) -> dict:
    if not yt_video_id.strip():
        raise ValidationFailed("yt_video_id is required")
    result, debit = run_agent_task(
        session,
        user_id=user_id,
        feature="comment_critique",
        payload={"Prompt": COMMENT_CRITIQUE_PROMPT, "yt_video_id": yt_video_id},
        client=client,
    )
    finish_task(session, debit)
    reply = result.output
    if isinstance(reply, str):
        try:
            reply = json.loads(reply)
        except json.JSONDecodeError:
            reply = {"response_text": reply}
    if not isinstance(reply, dict):
        reply = {"response_text": json.dumps(reply)}
    return {"success": True, "critique": reply}


def idea_row(idea: VideoIdea) -> dict:
    return {
        "id": idea.id,
        "channel_id": idea.channel_id,
        "title": idea.title,
        "description": idea.description,
        "plan": idea.plan,
        "seo": idea.seo,
        "source": idea.source,
        "created_at": idea.created_at,
    }


def job_row(job: Job, channel: Channel | None = None) -> dict:
    payload = {
        "id": job.id,
        "kind": job.kind,
        "generator_id": job.generator_id,
        "status": job.status,
        "url": job.url,
        "title": job.title,
        "description": job.description,
        "asset_type": job.asset_type,
        "parent_job_id": job.parent_job_id,
        "video_idea_id": job.video_idea_id,
        "credits_charged": job.credits_charged,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "completed_at": job.completed_at,
    }
    if channel is not None:
        payload["channel_id"] = channel.channel_id
    return payload
