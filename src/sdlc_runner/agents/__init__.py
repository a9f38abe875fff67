"""Agent providers, role registry and response parsing."""

from .base import AgentInvoker, AgentRequest, DryRunInvoker, invoke_with_retry
from .command import CommandAgentInvoker
from .errors import calculate_backoff, classify_api_error, should_retry
from .providers import ProviderRegistry, build_provider_registry
from .registry import AgentRegistry, AgentRunContext, PromptAgent, UnsupportedAgent
from .response_parser import AgentResponse, ParseResult, parse_agent_response

__all__ = [
    "AgentInvoker",
    "AgentRegistry",
    "AgentRequest",
    "AgentResponse",
    "AgentRunContext",
    "CommandAgentInvoker",
    "DryRunInvoker",
    "ParseResult",
    "PromptAgent",
    "ProviderRegistry",
    "UnsupportedAgent",
    "build_provider_registry",
    "calculate_backoff",
    "classify_api_error",
    "invoke_with_retry",
    "parse_agent_response",
    "should_retry",
]
