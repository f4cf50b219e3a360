from __future__ import annotations

from dataclasses import dataclass
import os


@dataclass(frozen=True)
class AgentFeature:
    name: str
    agent: str
    path: str
    result_path: tuple[str, ...]
    operation: str | None
    sends_callback: bool = False


@dataclass(frozen=True)
class AgentRoute:
    feature: AgentFeature
    url: str
    timeout_s: int
    callback_url: str


class AgentConfigError(RuntimeError):
    pass


_AGENT_BASE_ENV = {
    "primary": "AGENT_PRIMARY_URL",
    "analysis": "AGENT_ANALYSIS_URL",
}

_ACCEPTED_PATH = ("result", "Response", "request_id")

FEATURES: dict[str, AgentFeature] = {
    feature.name: feature
    for feature in (
        AgentFeature("audio", "primary", "/Voice_from_text", _ACCEPTED_PATH, "AUDIO_GENERATE", True),
        AgentFeature("thumbnail", "primary", "/Thumbnail_Make", _ACCEPTED_PATH, "THUMBNAIL_GENERATE", True),
        AgentFeature("reel", "primary", "/Reels_Making", _ACCEPTED_PATH, "REEL_GENERATE", True),
        AgentFeature(
            "similar_discover",
            "analysis",
            "/competitor_find",
            ("result", "Output", "competitors", "videoList"),
            "SIMILAR_CHANNELS_DISCOVER",
        ),
        AgentFeature("ideas_generate", "primary", "/Video_Ideas", ("result", "Reply"), "IDEAS_GENERATE_NEXT"),
        AgentFeature("idea_plan", "primary", "/Video_Plan", ("result", "Reply"), "IDEAS_GENERATE_PLAN"),
        AgentFeature("idea_seo", "primary", "/Video_SEO", ("result", "Reply"), "IDEAS_GENERATE_SEO"),
        AgentFeature("ctr_predict", "analysis", "/CTR_Predict", ("result", "Output"), "CTR_PREDICT"),
        AgentFeature(
            "comment_critique",
            "analysis",
            "/Analyze_Single_Video_Comments",
            ("result", "Output", "reply"),
            None,
        ),
    )
}


def get_feature(name: str) -> AgentFeature:
    try:
        return FEATURES[name]
    except KeyError as exc:
        raise KeyError(f"Unknown agent feature: {name}") from exc


def load_route(name: str) -> AgentRoute:
    feature = get_feature(name)
    base_env = _AGENT_BASE_ENV[feature.agent]
    base_url = os.getenv(base_env, "").strip().rstrip("/")
    if not base_url:
        raise AgentConfigError(f"{base_env} is not configured")
    default_timeout = int(os.getenv("AGENT_TIMEOUT_S", "120"))
    timeout_s = int(os.getenv(f"AGENT_{name.upper()}_TIMEOUT_S", str(default_timeout)))
    return AgentRoute(
        feature=feature,
        url=f"{base_url}{feature.path}",
        timeout_s=max(1, min(timeout_s, 120)),
        callback_url=os.getenv("AGENT_CALLBACK_URL", "").strip(),
    )
