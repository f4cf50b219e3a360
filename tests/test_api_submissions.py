from __future__ import annotations

from http.client import RemoteDisconnected
from uuid import UUID

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

import agents.client as client_module
import api.main as api_main
import pipeline.features as features_module
from agents import AgentError
from db.models import CreditTransaction, Job, UserAccount, VideoIdea
from pipeline.errors import (
    AgentFailure,
    ConfigurationError,
    InsufficientCredits,
    NotFound,
    ValidationFailed,
)


def _credits(factory, user_id: str = "user-1") -> int:
    session = factory()
    try:
        return session.get(UserAccount, user_id).credits
    finally:
        session.close()


def _jobs(factory) -> list[Job]:
    session = factory()
    try:
        return list(session.execute(select(Job).order_by(Job.created_at)).scalars())
    finally:
        session.close()


def _debits(factory) -> list[CreditTransaction]:
    session = factory()
    try:
        return list(
            session.execute(select(CreditTransaction).where(CreditTransaction.kind == "debit")).scalars()
        )
    finally:
        session.close()


def _audio_request(**overrides) -> api_main.AudioGenerateRequest:
    fields = {"channel_id": "UC-main", "text": "Hello there", "ref_audio_url": "https://cdn.test/ref.mp3"}
    fields.update(overrides)
    return api_main.AudioGenerateRequest(**fields)


def test_audio_generation_debits_and_records_processing_job(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)
    agent_client.request_ids.append("req-1")

    response = api_main.generate_audio(_audio_request(title="Intro"), user_id="user-1")

    assert response["success"] is True
    assert response["generator_id"] == "req-1"
    assert response["request_id"] == "req-1"
    assert response["status"] == "PROCESSING"
    assert _credits(api_db) == 90

    jobs = _jobs(api_db)
    assert len(jobs) == 1
    assert jobs[0].kind == "asset"
    assert jobs[0].asset_type == "mp3"
    assert jobs[0].credits_charged == 10
    assert jobs[0].url is None
    assert str(jobs[0].id) == response["job_id"]

    debit = _debits(api_db)[0]
    assert debit.status == "settled"
    assert debit.job_id == jobs[0].id

    feature, payload = agent_client.calls[0]
    assert feature == "audio"
    assert payload == {"text": "Hello there", "ref_audio_url": "https://cdn.test/ref.mp3"}


def test_insufficient_credits_rejects_before_agent_call(api_db, seed_user, agent_client) -> None:
    seed_user(credits=5)

    with pytest.raises(InsufficientCredits) as exc_info:
        api_main.generate_audio(_audio_request(), user_id="user-1")

    assert exc_info.value.status_code == 402
    assert exc_info.value.message == "Insufficient credits"
    assert agent_client.calls == []
    assert _jobs(api_db) == []
    assert _credits(api_db) == 5


def test_foreign_channel_is_not_found_and_not_charged(api_db, seed_user, agent_client) -> None:
    seed_user("user-1", credits=100, channel_id="UC-mine")
    seed_user("user-2", credits=100, channel_id="UC-theirs")

    with pytest.raises(NotFound) as exc_info:
        api_main.generate_audio(_audio_request(channel_id="UC-theirs"), user_id="user-1")

    assert exc_info.value.message == "Invalid channelId"
    assert _credits(api_db, "user-1") == 100
    assert agent_client.calls == []


def test_agent_failure_refunds_by_default(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)
    agent_client.error = AgentError(code="timeout", message="slow", feature="audio")

    with pytest.raises(AgentFailure) as exc_info:
        api_main.generate_audio(_audio_request(), user_id="user-1")

    assert exc_info.value.status_code == 502
    assert exc_info.value.details["code"] == "timeout"
    assert exc_info.value.details["credits_refunded"] is True
    assert _credits(api_db) == 100
    assert _jobs(api_db) == []
    assert _debits(api_db)[0].status == "refunded"


def test_agent_failure_keeps_charge_when_refunds_disabled(api_db, seed_user, agent_client, monkeypatch) -> None:
    monkeypatch.setenv("REFUND_ON_AGENT_FAILURE", "0")
    seed_user(credits=100)
    agent_client.error = AgentError(code="http_500", message="boom", feature="audio", status_code=500)

    with pytest.raises(AgentFailure) as exc_info:
        api_main.generate_audio(_audio_request(), user_id="user-1")

    assert exc_info.value.details["credits_refunded"] is False
    assert _credits(api_db) == 90
    assert _debits(api_db)[0].status == "settled"


def test_reused_request_id_is_refunded(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)
    agent_client.request_ids.extend(["req-dup", "req-dup"])

    api_main.generate_audio(_audio_request(), user_id="user-1")
    with pytest.raises(AgentFailure) as exc_info:
        api_main.generate_audio(_audio_request(), user_id="user-1")

    assert exc_info.value.details["code"] == "duplicate_request_id"
    assert _credits(api_db) == 90
    assert len(_jobs(api_db)) == 1


def test_unconfigured_agent_fails_before_debit(api_db, seed_user, agent_client, monkeypatch) -> None:
    monkeypatch.delenv("AGENT_PRIMARY_URL")
    seed_user(credits=100)

    with pytest.raises(ConfigurationError):
        api_main.generate_audio(_audio_request(), user_id="user-1")

    assert _credits(api_db) == 100
    assert _debits(api_db) == []


def test_thumbnail_falls_back_to_channel_thumbnail(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100, thumbnail_url="https://yt.test/channel.jpg")
    agent_client.request_ids.append("thumb-1")

    response = api_main.generate_thumbnail(
        api_main.ThumbnailGenerateRequest(channel_id="UC-main", prompt="space cats"),
        user_id="user-1",
    )

    assert response["status"] == "PROCESSING"
    assert _credits(api_db) == 85
    _, payload = agent_client.calls[0]
    assert payload["images"] == ["https://yt.test/channel.jpg"]
    assert payload["prompt"].startswith("space cats")
    assert _jobs(api_db)[0].kind == "thumbnail"


def test_thumbnail_without_any_image_is_rejected_before_debit(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)

    with pytest.raises(ValidationFailed):
        api_main.generate_thumbnail(api_main.ThumbnailGenerateRequest(channel_id="UC-main"), user_id="user-1")

    assert _credits(api_db) == 100
    assert agent_client.calls == []


def test_reel_draft_is_local_and_free(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)

    response = api_main.create_reel(
        api_main.ReelCreateRequest(
            channel_id="UC-main",
            title="Draft",
            image_urls=["https://cdn.test/a.png", "https://cdn.test/b.mp4"],
        ),
        user_id="user-1",
    )

    assert response["status"] == "COMPLETED"
    assert response["generator_id"].startswith("reel_")
    assert response["request_id"] is None
    assert _credits(api_db) == 100
    assert agent_client.calls == []

    jobs = _jobs(api_db)
    reel = next(job for job in jobs if job.kind == "reel")
    assets = [job for job in jobs if job.kind == "reel_asset"]
    assert {asset.asset_type for asset in assets} == {"image", "mp4"}
    assert all(asset.parent_job_id == reel.id for asset in assets)
    assert all(asset.generator_id.startswith("reel_asset_") for asset in assets)


def test_reel_with_prompt_and_media_is_submitted(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)
    agent_client.request_ids.append("reel-req")

    response = api_main.create_reel(
        api_main.ReelCreateRequest(
            channel_id="UC-main",
            title="Launch",
            prompt="fast cuts",
            image_urls=["https://cdn.test/a.png"],
        ),
        user_id="user-1",
    )

    assert response["status"] == "PROCESSING"
    assert response["generator_id"] == "reel-req"
    assert _credits(api_db) == 80

    listing = api_main.list_reels(channel_id="UC-main", user_id="user-1")
    assert listing["total_reels"] == 1
    assert listing["reels"][0]["reel_assets"][0]["url"] == "https://cdn.test/a.png"


def test_reel_with_foreign_idea_is_rejected(api_db, seed_user, agent_client) -> None:
    seed_user("user-1", credits=100, channel_id="UC-mine")
    other_channel = seed_user("user-2", credits=100, channel_id="UC-theirs")
    session = api_db()
    try:
        idea = VideoIdea(channel_id=other_channel, title="Not yours")
        session.add(idea)
        session.commit()
        idea_id = idea.id
    finally:
        session.close()

    with pytest.raises(NotFound):
        api_main.create_reel(
            api_main.ReelCreateRequest(channel_id="UC-mine", title="x", video_idea_id=idea_id),
            user_id="user-1",
        )


def test_uploaded_asset_is_completed_without_debit(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)

    response = api_main.create_asset(
        api_main.AssetCreateRequest(channel_id="UC-main", url="https://cdn.test/voice.mp3", asset_type="mp3"),
        user_id="user-1",
    )

    assert response["status"] == "COMPLETED"
    assert response["generator_id"].startswith("upl_")
    assert _credits(api_db) == 100

    listing = api_main.list_audio_assets(channel_id="UC-main", user_id="user-1")
    assert listing["total_assets"] == 1
    assert listing["assets"][0]["url"] == "https://cdn.test/voice.mp3"


def test_generate_ideas_persists_agent_ideas(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100, title="Main")
    agent_client.outputs.append([{"title": "Idea A", "description": "first"}, "Idea B", {"bad": True}])

    response = api_main.generate_ideas(
        api_main.IdeaGenerateRequest(channel_id="UC-main", context="gaming", count=3),
        user_id="user-1",
    )

    assert [idea["title"] for idea in response["ideas"]] == ["Idea A", "Idea B"]
    assert all(idea["source"] == "agent" for idea in response["ideas"])
    assert _credits(api_db) == 85
    assert _debits(api_db)[0].status == "settled"


def test_generate_ideas_rejects_unusable_output(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)
    agent_client.outputs.append("not json at all")

    with pytest.raises(AgentFailure) as exc_info:
        api_main.generate_ideas(api_main.IdeaGenerateRequest(channel_id="UC-main"), user_id="user-1")

    assert exc_info.value.details["code"] == "invalid_output"
    assert _credits(api_db) == 100


def test_idea_plan_and_seo_are_stored_on_the_idea(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)
    created = api_main.create_idea(
        api_main.IdeaCreateRequest(channel_id="UC-main", title="How to speedrun"),
        user_id="user-1",
    )
    idea_id = UUID(created["idea"]["id"])
    agent_client.outputs.extend([{"steps": ["hook", "body"]}, {"keywords": ["speedrun"]}])

    plan = api_main.generate_idea_plan(
        idea_id,
        api_main.IdeaPlanRequest(context="10 minute video", schedule_data={"day": "Mon"}),
        user_id="user-1",
    )
    seo = api_main.generate_idea_seo(idea_id, api_main.IdeaSeoRequest(), user_id="user-1")

    assert plan["plan"] == {"steps": ["hook", "body"]}
    assert seo["seo"] == {"keywords": ["speedrun"]}
    assert agent_client.calls[0][1]["scheduleData"] == {"day": "Mon"}
    assert _credits(api_db) == 84

    listing = api_main.list_ideas(channel_id="UC-main", limit=50, offset=0, user_id="user-1")
    assert listing["ideas"][0]["plan"] == {"steps": ["hook", "body"]}
    assert listing["ideas"][0]["seo"] == {"keywords": ["speedrun"]}


def test_ctr_prediction_is_charged(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)
    agent_client.outputs.append({"ctr": 0.07})

    response = api_main.predict_ctr(
        api_main.CtrPredictRequest(channel_id="UC-main", thumbnail_url="https://cdn.test/t.jpg", title="Big news"),
        user_id="user-1",
    )

    assert response["prediction"] == {"ctr": 0.07}
    assert _credits(api_db) == 95


def test_comment_critique_is_free(api_db, seed_user, agent_client) -> None:
    seed_user(credits=0)
    agent_client.outputs.append('{"issues": ["audio"]}')

    response = api_main.critique_comments(
        api_main.CommentCritiqueRequest(yt_video_id="vid-1"),
        user_id="user-1",
    )

    assert response["critique"] == {"issues": ["audio"]}
    assert _debits(api_db) == []


def test_dropped_agent_connection_is_agent_failure_and_refunded(api_db, seed_user, monkeypatch) -> None:
    seed_user(credits=50)

    def _drop(req, timeout=None):
        raise RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr(client_module.urlrequest, "urlopen", _drop)

    with pytest.raises(AgentFailure) as exc_info:
        api_main.generate_audio(_audio_request(), user_id="user-1")

    assert exc_info.value.status_code == 502
    assert exc_info.value.details["code"] == "network_error"
    assert exc_info.value.details["credits_refunded"] is True
    assert _credits(api_db) == 50
    assert _jobs(api_db) == []
    assert _debits(api_db)[0].status == "refunded"


def test_reel_and_media_rows_are_saved_together(api_db, seed_user, agent_client, monkeypatch) -> None:
    seed_user(credits=100)
    agent_client.request_ids.append("reel-broken")
    real_create = features_module.create_local_job

    def _invalid_media_row(session, **fields):
        fields["kind"] = "not_a_kind"
        return real_create(session, **fields)

    monkeypatch.setattr(features_module, "create_local_job", _invalid_media_row)

    with pytest.raises(IntegrityError):
        api_main.create_reel(
            api_main.ReelCreateRequest(
                channel_id="UC-main",
                title="Launch",
                prompt="fast cuts",
                image_urls=["https://cdn.test/a.png"],
            ),
            user_id="user-1",
        )

    assert _jobs(api_db) == []
    assert _credits(api_db) == 100
    assert _debits(api_db)[0].status == "refunded"
