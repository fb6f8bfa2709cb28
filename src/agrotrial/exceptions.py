"""
Error taxonomy for the transformation and inference pipeline.
"""

from __future__ import annotations

from typing import Optional


class AgrotrialError(ValueError):
    """Base class for analysis errors raised by agrotrial."""


class InsufficientDataError(AgrotrialError):
    """Fewer than two usable values were available for θ estimation."""


class NoObservationsError(AgrotrialError):
    """A trait/environment subset has no non-missing response values."""

    def __init__(self, trait: str, environment: Optional[str] = None) -> None:
        self.trait = trait
        self.environment = environment
        where = f" in environment '{environment}'" if environment is not None else ""
        super().__init__(f"No observations for trait '{trait}'{where}")


class SingularFitError(AgrotrialError):
    """The mixed-model design is rank deficient or the fit did not converge."""

    def __init__(
        self,
        message: str,
        trait: Optional[str] = None,
        environment: Optional[str] = None,
        step: Optional[str] = None,
    ) -> None:
        self.trait = trait
        self.environment = environment
        self.step = step
        self.reason = message
        super().__init__(message)

    def with_context(
        self,
        trait: Optional[str] = None,
        environment: Optional[str] = None,
        step: Optional[str] = None,
    ) -> "SingularFitError":
        """Return a copy of the error annotated with where it happened."""
        parts = []
        if trait is not None:
            parts.append(f"trait={trait}")
        if environment is not None:
            parts.append(f"environment={environment}")
        if step is not None:
            parts.append(f"step={step}")
        message = f"{self.reason} [{', '.join(parts)}]" if parts else self.reason
        err = SingularFitError(message, trait=trait, environment=environment, step=step)
        err.reason = self.reason
        return err


class UnknownContrastLevelError(AgrotrialError):
    """A requested contrast level is not among the fitted model's levels."""

    def __init__(self, level: str) -> None:
        self.level = level
        super().__init__(f"Unknown contrast level: '{level}'")
