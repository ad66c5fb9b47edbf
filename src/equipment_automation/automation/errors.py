"""
Error taxonomy for the automation engine.

Configuration errors are raised at create/update time so a bad automation
never reaches the scheduler. Evaluation and execution errors are caught
inside the engine and surface through run logs instead.
"""

from typing import Any, Dict, Optional


class AutomationError(Exception):
    """Base exception for all automation engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize automation error.

        Args:
            message: Human-readable error message
            details: Optional dict with additional error context
        """
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(AutomationError):
    """Raised when a trigger, condition, or action config is malformed."""

    pass


class ScheduleParseError(ValidationError):
    """Raised when schedule fields or a cron expression cannot be parsed."""

    pass


class EvaluationError(AutomationError):
    """Raised when a condition comparison meets an unsupported operand."""

    pass


class ExecutionError(AutomationError):
    """Raised when an equipment-control or alert call fails."""

    pass


class AutomationNotFoundError(AutomationError):
    """Raised when an automation ID is unknown."""

    def __init__(self, automation_id: int):
        super().__init__(
            f"Automation {automation_id} not found",
            {"automation_id": automation_id},
        )
        self.automation_id = automation_id
