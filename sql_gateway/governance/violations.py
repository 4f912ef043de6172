"""
Typed rejection vocabulary shared by every validation stage.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RejectionReason(str, Enum):
    STRUCTURAL_INVALID = "StructuralInvalid"
    FORBIDDEN_OPERATION = "ForbiddenOperation"
    INJECTION_RISK = "InjectionRisk"
    MISSING_SCOPE_GUARD = "MissingScopeGuard"
    CONFIRMATION_REQUIRED = "ConfirmationRequired"
    EXECUTION_ERROR = "ExecutionError"
    PERMISSION_DENIED = "PermissionDenied"
    PREVIEW_UNAVAILABLE = "PreviewUnavailable"


@dataclass(frozen=True)
class Violation:
    """One finding from a validation stage."""
    reason: RejectionReason
    message: str
    category: str | None = None

    def __str__(self) -> str:
        if self.category:
            return f"{self.reason.value}[{self.category}]: {self.message}"
        return f"{self.reason.value}: {self.message}"
