"""
Error types for hivemind

Every error carries a stable `code` that API clients see verbatim, a
human-readable message, and a context dict that ends up in log lines.
`is_retryable` marks the transient store failures that decision.retry
re-runs; everything else fails on the first attempt.
"""

from typing import Optional, Dict, Any


class HivemindError(Exception):
    """Root of the hierarchy; the API layer maps `code` to an HTTP status"""

    code: str = "INTERNAL_ERROR"
    _retryable: bool = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """True for connection loss and serialization conflicts only"""
        return self._retryable

    def __str__(self):
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={val}" for key, val in self.context.items())
        return f"{self.message} ({details})"


# ========== Store Errors ==========


class DatabaseError(HivemindError):
    """A store operation failed and retrying will not help"""
    code = "STORE_ERROR"


class DatabaseConnectionError(DatabaseError):
    """Postgres unreachable, or the connection dropped mid-transaction"""
    code = "STORE_UNAVAILABLE"
    _retryable = True


class TransactionConflictError(DatabaseError):
    """Serialization failure or deadlock - the atomic unit can be re-run as a whole

    Expected under concurrent voting, not a bug.
    """
    code = "TRANSACTION_CONFLICT"
    _retryable = True

    def __init__(self, message: str, operation: Optional[str] = None):
        self.operation = operation
        super().__init__(message, {"operation": operation} if operation else None)


class DataIntegrityError(DatabaseError):
    """A constraint rejected the write (FK, unique, check)"""

    def __init__(self, message: str, table: Optional[str] = None, constraint: Optional[str] = None):
        self.table = table
        self.constraint = constraint
        context = {
            key: val for key, val in (("table", table), ("constraint", constraint)) if val
        }
        super().__init__(message, context)


# ========== Validation / Analysis Errors ==========


class ValidationError(HivemindError):
    """Bad input, rejected before any store access

    Examples:
    - Non-integer vote delta
    - Empty statement list
    """
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[Any] = None):
        self.field = field
        self.value = value

        context: Dict[str, Any] = {}
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)

        super().__init__(message, context)


class ConfigurationError(HivemindError):
    """Missing or unusable setting (API key, JWT secret)"""
    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        super().__init__(message, {"config_key": config_key} if config_key else None)


class LLMError(HivemindError):
    """The analysis model call failed or returned nothing usable"""
    code = "ANALYSIS_FAILED"

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.model = model
        self.original_error = original_error

        context: Dict[str, Any] = {}
        if model:
            context["model"] = model
        if original_error is not None:
            context["cause"] = repr(original_error)

        super().__init__(message, context)


# ========== Decision Errors ==========


class DecisionError(HivemindError):
    """Expected, user-facing failures of the voting ledger and round lifecycle"""
    code = "DECISION_ERROR"


# --- Not found ---


class ConversationNotFoundError(DecisionError):
    code = "CONVERSATION_NOT_FOUND"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Conversation not found", {"session_id": session_id})


class RoundNotFoundError(DecisionError):
    code = "ROUND_NOT_FOUND"

    def __init__(self, round_id: Optional[str] = None, message: str = "Round not found"):
        self.round_id = round_id
        super().__init__(message, {"round_id": round_id} if round_id else None)


class ProposalNotFoundError(DecisionError):
    """Proposal id does not exist at all"""
    code = "RESPONSE_NOT_FOUND"

    def __init__(self, proposal_id: str):
        self.proposal_id = proposal_id
        super().__init__("Proposal not found", {"proposal_id": proposal_id})


class SourceConversationNotFoundError(DecisionError):
    """Source conversation missing, in another hive, or not an analysis-ready understand session"""
    code = "SOURCE_CONVERSATION_NOT_FOUND"

    def __init__(self, source_conversation_id: str, reason: str = "Source conversation not found"):
        self.source_conversation_id = source_conversation_id
        super().__init__(reason, {"source_conversation_id": source_conversation_id})


# --- State conflicts ---


class NotDecisionSessionError(DecisionError):
    code = "NOT_DECISION_SESSION"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            "Voting is only available for decision sessions", {"session_id": session_id}
        )


class NotAProposalError(DecisionError):
    """Proposal exists but is not part of the round being voted on"""
    code = "NOT_A_PROPOSAL"

    def __init__(self, proposal_id: str, round_id: str):
        self.proposal_id = proposal_id
        self.round_id = round_id
        super().__init__(
            "Proposal is not part of this round",
            {"proposal_id": proposal_id, "round_id": round_id},
        )


class NegativeVotesError(DecisionError):
    code = "NEGATIVE_VOTES"

    def __init__(self, proposal_id: str, current_votes: int, delta: int):
        self.proposal_id = proposal_id
        self.current_votes = current_votes
        self.delta = delta
        super().__init__(
            "Cannot reduce votes below zero",
            {"proposal_id": proposal_id, "current_votes": current_votes, "delta": delta},
        )


class BudgetExceededError(DecisionError):
    code = "BUDGET_EXCEEDED"

    def __init__(self, cost_after: int, credit_budget: int, remaining_credits: int):
        self.cost_after = cost_after
        self.credit_budget = credit_budget
        self.remaining_credits = remaining_credits
        super().__init__(
            "Insufficient credits",
            {"cost_after": cost_after, "credit_budget": credit_budget},
        )


class RoundNotOpenError(DecisionError):
    code = "ROUND_NOT_OPEN"

    def __init__(self, round_id: Optional[str], status: Optional[str] = None):
        self.round_id = round_id
        self.status = status
        context = {}
        if round_id:
            context['round_id'] = round_id
        if status:
            context['status'] = status
        super().__init__("Round is not open for voting", context)


class RoundNotFinalizedError(DecisionError):
    code = "ROUND_NOT_CLOSED_OR_NOT_FINALIZED"

    def __init__(self, round_id: str, status: str):
        self.round_id = round_id
        self.status = status
        super().__init__(
            "Current round must have generated results before a new round starts",
            {"round_id": round_id, "status": status},
        )


class InvalidTransitionError(DecisionError):
    """Attempted a round status transition that skips or reverses a state"""
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move round from {current} to {target}",
            {"current": current, "target": target},
        )


# --- Authorization ---


class UnauthorizedError(DecisionError):
    """Caller is not authenticated or not a member of the owning hive"""
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Not a member of this hive"):
        super().__init__(message)


class ForbiddenError(DecisionError):
    """Caller lacks the admin role required for the operation"""
    code = "FORBIDDEN"

    def __init__(self, message: str = "Only hive admins can perform this action"):
        super().__init__(message)


class NotAuthenticatedError(UnauthorizedError):
    """No valid session token; rendered as 401 rather than 403"""
    http_status = 401

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)
