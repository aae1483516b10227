"""Injectable invariant checks.

Services receive a Diagnostics instance instead of reaching for global debug
hooks. In strict mode (tests, development) a failed check raises
InvariantViolation so the broken contract surfaces immediately; in production
the check logs and the caller fails safe by skipping the operation.
"""
from typing import Any, Dict, List, Optional

from copilot.core.error_codes import InvariantViolation
from copilot.core.logging import get_logger

logger = get_logger(__name__)


class Diagnostics:
    """Invariant assertion interface."""

    def __init__(self, strict: bool = True):
        self.strict = strict
        self.violations: List[Dict[str, Any]] = []

    @classmethod
    def from_settings(cls, settings) -> "Diagnostics":
        return cls(strict=settings.invariants_are_strict())

    def check(self, condition: bool, invariant: str, message: str, **details: Any) -> bool:
        """Assert an invariant.

        Returns:
            True when the invariant holds. False when it is violated and the
            instance is non-strict; the caller must then no-op.

        Raises:
            InvariantViolation: violated and strict
        """
        if condition:
            return True
        self.violations.append({"invariant": invariant, "message": message, "details": details})
        logger.error(
            "Invariant violated: %s: %s %s", invariant, message, details,
            extra={"event": "invariant_violation", "error_code": invariant},
        )
        if self.strict:
            raise InvariantViolation(invariant, message, details)
        return False

    def fail(self, invariant: str, message: str, **details: Any) -> bool:
        """Report an unconditional violation."""
        return self.check(False, invariant, message, **details)

    @property
    def last_violation(self) -> Optional[Dict[str, Any]]:
        return self.violations[-1] if self.violations else None
