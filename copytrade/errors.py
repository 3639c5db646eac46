"""Error taxonomy shared by the scheduler, the gate and the executor."""

from __future__ import annotations

from typing import Any, Optional


class CopytradeError(Exception):
    """Base class for every error raised by the copytrade package."""


class ValidationError(CopytradeError, ValueError):
    """Bad input shape or bounds; no state was changed."""


class NotFoundError(CopytradeError, KeyError):
    """Unknown task or agent id."""

    def __str__(self) -> str:  # KeyError quotes its message otherwise
        return str(self.args[0]) if self.args else ""


class BlockedByReconciliation(CopytradeError):
    """The reconciliation gate refused the cycle for this agent."""

    def __init__(self, agent_id: str, state: Any = None) -> None:
        super().__init__(f"agent {agent_id} is blocked pending reconciliation")
        self.agent_id = agent_id
        self.state = state


class ExecutionError(CopytradeError):
    """Brokerage call failed."""

    def __init__(self, message: str, *, code: Optional[int] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class CredentialError(ExecutionError):
    """Brokerage credentials are missing or rejected. Fatal for the cycle."""


class TransientExecutionError(ExecutionError):
    """Network or venue hiccup. The next natural tick retries."""


class VenueRejectedError(ExecutionError):
    """The venue rejected this particular order."""


class PartialExecutionFailure(CopytradeError):
    """Some order intents of a cycle failed; placed orders are not rolled back."""

    def __init__(self, result: Any) -> None:
        failed = [o for o in getattr(result, "outcomes", []) if o.status == "failed"]
        super().__init__(f"{len(failed)} order intent(s) failed for agent {getattr(result, 'agent_id', '?')}")
        self.result = result
        self.failed = failed


__all__ = [
    "CopytradeError",
    "ValidationError",
    "NotFoundError",
    "BlockedByReconciliation",
    "ExecutionError",
    "CredentialError",
    "TransientExecutionError",
    "VenueRejectedError",
    "PartialExecutionFailure",
]
