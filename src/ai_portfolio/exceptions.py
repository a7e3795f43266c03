"""Exception hierarchy for the portfolio engine."""

from ai_portfolio.models import ErrorKind


class PortfolioEngineError(Exception):
    """Base exception for all engine errors."""


class ConfigurationError(PortfolioEngineError):
    """Raised when configuration is invalid or missing."""


class TradeRejected(PortfolioEngineError):
    """Raised by the validator when a single proposed trade fails a rule.

    Never escapes a batch: the executor records it as a TradeError and moves
    on to the next trade.
    """

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class PersistenceError(PortfolioEngineError):
    """Raised when a storage read or write fails.

    Examples:
        - Order insert failed
        - Holding update violated a constraint
        - Portfolio cash write failed
    """


class UpstreamUnavailable(PortfolioEngineError):
    """Raised when a collaborator (market session, prices, proposer) fails."""


class PortfolioNotFoundError(PortfolioEngineError):
    """Raised when the requested portfolio does not exist."""


class PortfolioAccessError(PortfolioEngineError):
    """Raised when the portfolio belongs to a different owner."""


class PortfolioBusyError(PortfolioEngineError):
    """Raised when a run for the same portfolio is already in progress."""
