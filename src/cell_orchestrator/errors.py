"""Exception hierarchy shared by the engine and the HTTP layer."""

from __future__ import annotations


class CellOrchestratorError(Exception):
    """Base class for all engine errors."""


class MalformedResponse(CellOrchestratorError):
    """Model output could not be recovered into a structured value."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class ModelInvocationFailure(CellOrchestratorError):
    """Provider or transport failure while calling a model."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class LimiterTimeout(CellOrchestratorError):
    """A caller waited longer than its deadline for a limiter slot."""


class PlanningFailure(CellOrchestratorError):
    """The planner could not produce a valid execution plan."""


class UnknownCollection(CellOrchestratorError):
    pass


class UnknownTarget(CellOrchestratorError):
    pass


class UnknownTask(CellOrchestratorError):
    pass


class PresetError(CellOrchestratorError):
    pass
