from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import api.main as api_main
from agents import AgentAccepted, AgentError, AgentResult
from billing import reload_costs
from db.base import Base
from db.models import Channel, UserAccount


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture(autouse=True)
def _agent_env(monkeypatch):
    monkeypatch.setenv("AGENT_PRIMARY_URL", "http://agent.test")
    monkeypatch.setenv("AGENT_ANALYSIS_URL", "http://analysis.test")
    monkeypatch.setenv("AGENT_CALLBACK_URL", "http://thryve.test/webhook")
    monkeypatch.delenv("CREDIT_COSTS_FILE", raising=False)
    monkeypatch.delenv("REFUND_ON_AGENT_FAILURE", raising=False)
    monkeypatch.delenv("WEBHOOK_TOKEN", raising=False)
    reload_costs()
    yield
    reload_costs()


@dataclass
class FakeAgentClient:
    """Scripted stand-in for the agent gateway; records every call."""

    request_ids: list[str] = field(default_factory=list)
    outputs: list[Any] = field(default_factory=list)
    error: AgentError | None = None
    calls: list[tuple[str, dict]] = field(default_factory=list)

    def submit_job(self, feature: str, payload: dict) -> AgentAccepted:
        self.calls.append((feature, payload))
        if self.error is not None:
            raise self.error
        request_id = self.request_ids.pop(0)
        return AgentAccepted(request_id=request_id, raw={"result": {"Response": {"request_id": request_id}}})

    def run_task(self, feature: str, payload: dict) -> AgentResult:
        self.calls.append((feature, payload))
        if self.error is not None:
            raise self.error
        output = self.outputs.pop(0)
        return AgentResult(output=output, raw={"result": output})


@pytest.fixture()
def agent_client(monkeypatch):
    client = FakeAgentClient()
    monkeypatch.setattr(api_main, "get_agent_client", lambda: client)
    return client


@pytest.fixture()
def api_db(monkeypatch, session_factory):
    monkeypatch.setattr(api_main, "SessionLocal", session_factory)
    return session_factory


@pytest.fixture()
def seed_user(session_factory):
    """Create a user (and by default one owned channel); returns the channel's internal id."""

    def _seed(
        user_id: str = "user-1",
        *,
        credits: int = 100,
        channel_id: str | None = "UC-main",
        **channel_fields,
    ):
        session = session_factory()
        try:
            session.add(UserAccount(id=user_id, credits=credits))
            channel_pk = None
            if channel_id is not None:
                channel = Channel(user_id=user_id, channel_id=channel_id, **channel_fields)
                session.add(channel)
                session.flush()
                channel_pk = channel.id
            session.commit()
            return channel_pk
        finally:
            session.close()

    return _seed
