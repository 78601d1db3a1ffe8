"""Response strategies."""

from chatpilot.modes.agent import AgentStrategy
from chatpilot.modes.ask import AskStrategy
from chatpilot.modes.base import ModeStrategy, ResponseOutcome, StrategyRequest
from chatpilot.modes.query import QueryStrategy

__all__ = [
    "AgentStrategy",
    "AskStrategy",
    "ModeStrategy",
    "QueryStrategy",
    "ResponseOutcome",
    "StrategyRequest",
]
