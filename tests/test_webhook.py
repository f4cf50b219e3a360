from __future__ import annotations

from uuid import uuid4

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import select

import api.main as api_main
from db.models import JOB_KINDS, Job
from pipeline.completion import extract_result_url, handle_callback, normalize_status
from pipeline.errors import NotFound, Unauthorized, ValidationFailed


def _add_job(factory, channel_pk, *, generator_id: str, kind: str = "asset", status: str = "PROCESSING") -> None:
    session = factory()
    try:
        session.add(
            Job(
                id=uuid4(),
                kind=kind,
                generator_id=generator_id,
                status=status,
                user_id="user-1",
                channel_id=channel_pk,
            )
        )
        session.commit()
    finally:
        session.close()


def _job(factory, generator_id: str) -> Job:
    session = factory()
    try:
        return session.execute(select(Job).where(Job.generator_id == generator_id)).scalar_one()
    finally:
        session.close()


def test_completion_callback_applies_url_and_status(api_db, seed_user, agent_client) -> None:
    seed_user(credits=100)
    agent_client.request_ids.append("req-1")
    api_main.generate_audio(
        api_main.AudioGenerateRequest(channel_id="UC-main", text="hi", ref_audio_url="https://cdn.test/ref.mp3"),
        user_id="user-1",
    )

    response = api_main.agent_webhook(
        body={"request_id": "req-1", "status": "OK", "payload": {"audio": [{"url": "https://cdn.test/out.mp3"}]}},
        _guard=None,
    )

    assert response == {"success": True}
    job = _job(api_db, "req-1")
    assert job.status == "COMPLETED"
    assert job.url == "https://cdn.test/out.mp3"
    assert job.completed_at is not None
    assert job.result == {"audio": [{"url": "https://cdn.test/out.mp3"}]}


def test_duplicate_callback_applies_at_most_once(session_factory, seed_user) -> None:
    channel_pk = seed_user()
    _add_job(session_factory, channel_pk, generator_id="req-2")
    session = session_factory()
    try:
        first = handle_callback(
            session,
            {"request_id": "req-2", "status": "OK", "payload": {"images": [{"url": "https://cdn.test/a.png"}]}},
        )
        second = handle_callback(session, {"request_id": "req-2", "status": "ERROR"})
    finally:
        session.close()

    assert first.applied is True
    assert second.applied is False
    assert second.status == "COMPLETED"
    job = _job(session_factory, "req-2")
    assert job.status == "COMPLETED"
    assert job.url == "https://cdn.test/a.png"


def test_gateway_request_id_is_accepted(session_factory, seed_user) -> None:
    channel_pk = seed_user()
    _add_job(session_factory, channel_pk, generator_id="gw-9", kind="thumbnail")
    session = session_factory()
    try:
        outcome = handle_callback(session, {"gateway_request_id": "gw-9", "status": "ok"})
    finally:
        session.close()

    assert outcome.applied is True
    assert outcome.status == "COMPLETED"
    assert _job(session_factory, "gw-9").url is None


def test_failed_status_leaves_url_empty(session_factory, seed_user) -> None:
    channel_pk = seed_user()
    _add_job(session_factory, channel_pk, generator_id="req-3", kind="reel")
    session = session_factory()
    try:
        outcome = handle_callback(session, {"request_id": "req-3", "status": "ERROR", "payload": {}})
    finally:
        session.close()

    assert outcome.status == "FAILED"
    job = _job(session_factory, "req-3")
    assert job.status == "FAILED"
    assert job.url is None


def test_callback_only_touches_the_matching_job(session_factory, seed_user) -> None:
    channel_pk = seed_user()
    _add_job(session_factory, channel_pk, generator_id="thumb-1", kind="thumbnail")
    _add_job(session_factory, channel_pk, generator_id="audio-1", kind="asset")
    session = session_factory()
    try:
        handle_callback(
            session,
            {"request_id": "thumb-1", "status": "OK", "payload": {"images": [{"url": "https://cdn.test/t.png"}]}},
        )
    finally:
        session.close()

    assert _job(session_factory, "thumb-1").status == "COMPLETED"
    untouched = _job(session_factory, "audio-1")
    assert untouched.status == "PROCESSING"
    assert untouched.url is None


def _snapshot(factory) -> dict:
    session = factory()
    try:
        return {
            job.generator_id: (job.status, job.url, job.updated_at, job.completed_at)
            for job in session.execute(select(Job)).scalars()
        }
    finally:
        session.close()


def test_unknown_request_id_is_not_found_and_leaves_rows_untouched(api_db, seed_user) -> None:
    channel_pk = seed_user()
    for kind in JOB_KINDS:
        _add_job(api_db, channel_pk, generator_id=f"{kind}-pending", kind=kind)
    before = _snapshot(api_db)
    body = {"request_id": "unknown", "status": "OK", "payload": {"images": [{"url": "https://cdn.test/x.png"}]}}

    session = api_db()
    try:
        with pytest.raises(NotFound) as exc_info:
            handle_callback(session, body)
    finally:
        session.close()
    response = TestClient(api_main.app, raise_server_exceptions=False).post("/webhook", json=body)

    assert exc_info.value.message == "No matching record found for request_id"
    assert response.status_code == 404
    assert response.json() == {"error": "No matching record found for request_id"}
    assert len(before) == len(JOB_KINDS)
    assert _snapshot(api_db) == before
    assert all(status == "PROCESSING" and url is None for status, url, _, _ in before.values())


def test_missing_request_id_is_rejected(session_factory) -> None:
    session = session_factory()
    try:
        with pytest.raises(ValidationFailed):
            handle_callback(session, {"status": "OK", "request_id": "  "})
    finally:
        session.close()


def test_result_url_prefers_images_then_video_then_audio() -> None:
    payload = {
        "audio": [{"url": "https://cdn.test/a.mp3"}],
        "video": [{"url": "https://cdn.test/v.mp4"}],
        "images": [{"url": "https://cdn.test/i.png"}],
    }
    assert extract_result_url({"payload": payload}) == "https://cdn.test/i.png"
    assert extract_result_url({"payload": {"images": [], **{k: payload[k] for k in ("audio", "video")}}}) == (
        "https://cdn.test/v.mp4"
    )
    assert extract_result_url({"payload": {"audio": payload["audio"]}}) == "https://cdn.test/a.mp3"
    assert extract_result_url({"payload": "nope"}) is None


def test_status_normalization() -> None:
    assert normalize_status("OK") == "COMPLETED"
    assert normalize_status("ok") == "COMPLETED"
    assert normalize_status(" ok ") == "FAILED"
    assert normalize_status("ERROR") == "FAILED"
    assert normalize_status(None) == "FAILED"


def test_webhook_token_is_enforced_when_configured(monkeypatch) -> None:
    monkeypatch.setenv("WEBHOOK_TOKEN", "s3cret")

    with pytest.raises(Unauthorized):
        api_main._require_webhook_token(x_webhook_token="wrong")
    assert api_main._require_webhook_token(x_webhook_token="s3cret") is None
