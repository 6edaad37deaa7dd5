from foreman.strategies.base import CriticalEscalation, RunContext, RunStrategy
from foreman.strategies.loop import LoopStrategy
from foreman.strategies.team import TeamStrategy


def build_strategy(mode: str, *, concurrency: int = 3) -> RunStrategy:
    if mode == "team":
        return TeamStrategy(concurrency=concurrency)
    if mode == "loop":
        return LoopStrategy()
    raise ValueError(f"Unsupported execution mode: {mode}")


__all__ = [
    "CriticalEscalation",
    "LoopStrategy",
    "RunContext",
    "RunStrategy",
    "TeamStrategy",
    "build_strategy",
]
