"""Error taxonomy shared by the shell, trading engine and brain."""

from __future__ import annotations


class TradeAgentError(Exception):
    """Base class for all expected failures."""


class ConfigurationError(TradeAgentError):
    """Missing credentials or exhausted budget. Reported as a disabled feature."""


class CollaboratorError(TradeAgentError):
    """An external service timed out, failed, or returned garbage."""


class ExecutionError(CollaboratorError):
    pass


class ResearchError(CollaboratorError):
    pass


class LedgerPersistError(TradeAgentError):
    """The ledger document could not be written. In-memory state is still current."""


class PositionRejected(TradeAgentError):
    """A position was refused by a risk rule before any order was placed."""


class InvalidTransition(TradeAgentError):
    pass
