"""
Operation Outcomes

Operations that can require explicit caller intent (overpayment, cancelling a
due that holds money) return one of these variants instead of raising.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    """The operation was applied"""
    value: T

    @property
    def needs_confirmation(self) -> bool:
        return False


@dataclass(frozen=True)
class NeedsConfirmation:
    """Nothing was changed; resubmit with the confirm flag to proceed"""
    reason: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def needs_confirmation(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "needs_confirmation",
            "reason": self.reason,
            "error": self.message,
            "details": self.details,
        }


Outcome = Union[Success[T], NeedsConfirmation]
