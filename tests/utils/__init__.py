from .selector_validator import (
    TierValidator,
    TierResult,
    WorkflowValidator,
    WorkflowValidationReport,
    TargetValidationResult,
    print_validation_report,
)

__all__ = [
    "TierValidator",
    "TierResult",
    "WorkflowValidator",
    "WorkflowValidationReport",
    "TargetValidationResult",
    "print_validation_report",
]
