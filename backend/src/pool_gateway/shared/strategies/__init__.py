"""Per-dialect protocol strategies.

A strategy inspects requests and responses in one wire dialect and applies
the system-prompt file policy.  Cross-dialect reshaping lives in
``convert``.
"""

from pool_gateway.domain.enums import Dialect
from pool_gateway.shared.strategies.base import ModelStreamInfo, ProtocolStrategy
from pool_gateway.shared.strategies.claude import ClaudeStrategy
from pool_gateway.shared.strategies.openai import OpenAIStrategy

_STRATEGIES: dict[Dialect, ProtocolStrategy] = {
    Dialect.CLAUDE: ClaudeStrategy(),
    Dialect.OPENAI: OpenAIStrategy(),
}


def get_strategy(dialect: Dialect) -> ProtocolStrategy:
    return _STRATEGIES[dialect]


__all__ = [
    "ClaudeStrategy",
    "ModelStreamInfo",
    "OpenAIStrategy",
    "ProtocolStrategy",
    "get_strategy",
]
