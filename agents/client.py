from __future__ import annotations

from dataclasses import dataclass
from http.client import HTTPException
import json
import logging
from typing import Any
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError

from .routes import AgentRoute, load_route

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentError(Exception):
    code: str
    message: str
    feature: str
    status_code: int | None = None
    details: Any = None

    def __str__(self) -> str:
        return f"{self.code}({self.feature}): {self.message}"


@dataclass(frozen=True)
class AgentAccepted:
    """The agent took the job and will call back with ``request_id``."""

    request_id: str
    raw: dict[str, Any]


@dataclass(frozen=True)
class AgentResult:
    """The agent answered synchronously."""

    output: Any
    raw: dict[str, Any]


def _dig(data: Any, path: tuple[str, ...]) -> Any:
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


class AgentClient:
    def submit_job(self, feature: str, payload: dict[str, Any]) -> AgentAccepted:
        route = load_route(feature)
        body = dict(payload)
        if route.feature.sends_callback:
            body["fal_webhook"] = route.callback_url
        raw = self._post(route, body)
        request_id = _dig(raw, route.feature.result_path)
        if not isinstance(request_id, str) or not request_id.strip():
            raise AgentError(
                code="missing_request_id",
                message="Missing request_id in external response",
                feature=feature,
                details=raw,
            )
        return AgentAccepted(request_id=request_id.strip(), raw=raw)

    def run_task(self, feature: str, payload: dict[str, Any]) -> AgentResult:
        route = load_route(feature)
        raw = self._post(route, dict(payload))
        output = _dig(raw, route.feature.result_path)
        if output is None or output == "":
            raise AgentError(
                code="missing_output",
                message="Missing result in external response",
                feature=feature,
                details=raw,
            )
        return AgentResult(output=output, raw=raw)

    def _post(self, route: AgentRoute, payload: dict[str, Any]) -> dict[str, Any]:
        feature = route.feature.name
        req = urlrequest.Request(
            url=route.url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        try:
            with urlrequest.urlopen(req, timeout=route.timeout_s) as resp:
                body = resp.read().decode("utf-8")
        except HTTPError as exc:
            detail = self._parse_detail(exc.read().decode("utf-8", errors="replace"))
            logger.warning("agent http error feature=%s status=%s", feature, exc.code)
            raise AgentError(
                code=f"http_{exc.code}",
                message="External agent error",
                feature=feature,
                status_code=exc.code,
                details=detail,
            ) from exc
        except TimeoutError as exc:
            logger.warning("agent timeout feature=%s after=%ss", feature, route.timeout_s)
            raise AgentError(
                code="timeout",
                message=f"External agent did not answer within {route.timeout_s}s",
                feature=feature,
            ) from exc
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                logger.warning("agent timeout feature=%s after=%ss", feature, route.timeout_s)
                raise AgentError(
                    code="timeout",
                    message=f"External agent did not answer within {route.timeout_s}s",
                    feature=feature,
                ) from exc
            logger.warning("agent network error feature=%s reason=%s", feature, exc.reason)
            raise AgentError(
                code="network_error",
                message=self._sanitize(str(exc.reason)),
                feature=feature,
            ) from exc
        except (HTTPException, OSError) as exc:
            logger.warning("agent connection error feature=%s error=%s", feature, type(exc).__name__)
            raise AgentError(
                code="network_error",
                message=self._sanitize(str(exc) or type(exc).__name__),
                feature=feature,
            ) from exc

        try:
            data = json.loads(body)
        except json.JSONDecodeError as exc:
            raise AgentError(
                code="invalid_response",
                message="External agent returned non-JSON body",
                feature=feature,
                details={"body": self._sanitize(body)},
            ) from exc
        if not isinstance(data, dict):
            raise AgentError(
                code="invalid_response",
                message="External agent returned a non-object body",
                feature=feature,
                details=data,
            )
        return data

    def _parse_detail(self, text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return {"body": self._sanitize(text)}

    def _sanitize(self, message: str) -> str:
        return (message or "").replace("\n", " ")[:300]


_CLIENT = AgentClient()


def get_agent_client() -> AgentClient:
    return _CLIENT
