from __future__ import annotations

import enum
import functools
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from .crypto import MAX_UINT256, NULL_ADDRESS

F = TypeVar("F", bound=Callable[..., Any])


class AccessPolicy(enum.Enum):
    # Every privileged entry point requires a manager.
    GUARDED = "guarded"
    # setManager and the margin plugin approval accept any caller, as deployed.
    LEGACY_UNGUARDED = "legacy_unguarded"


@dataclass
class VaultState:
    initialized: bool = False
    managers: set[str] = field(default_factory=set)
    trigger: str = NULL_ADDRESS
    lending_pool: str = NULL_ADDRESS
    lending_data_provider: str = NULL_ADDRESS
    lending_gateway: str = NULL_ADDRESS
    lending_referral_code: int = 0
    margin_router: str = NULL_ADDRESS
    margin_position_router: str = NULL_ADDRESS
    margin_referral_code: bytes = b"\x00" * 32
    swap_approval_amount: int = MAX_UINT256
    access_policy: AccessPolicy = AccessPolicy.GUARDED
    entered: bool = False


def transactional(fn: F) -> F:
    """Run a contract entry point inside one all-or-nothing ledger transaction."""

    @functools.wraps(fn)
    def wrapper(self, *args: Any, **kwargs: Any) -> Any:
        with self.ledger.transaction():
            return fn(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]
