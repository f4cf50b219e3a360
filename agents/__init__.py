from .client import AgentAccepted, AgentClient, AgentError, AgentResult, get_agent_client
from .routes import FEATURES, AgentConfigError, AgentFeature, AgentRoute, get_feature, load_route

__all__ = [
    "AgentAccepted",
    "AgentClient",
    "AgentConfigError",
    "AgentError",
    "AgentFeature",
    "AgentResult",
    "AgentRoute",
    "FEATURES",
    "get_agent_client",
    "get_feature",
    "load_route",
]
