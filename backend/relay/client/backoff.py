"""Reconnect schedule for ChatClient."""
from dataclasses import dataclass
from typing import Optional

from relay.config import ClientSettings, get_config


@dataclass
class ReconnectPolicy:
    """Exponential backoff bounded by a delay cap and an attempt budget.

    Attributes:
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound on any single delay, in seconds.
        max_attempts: Retries allowed per unbroken failure streak.
    """
    base_delay: float = 1.0
    max_delay: float = 10.0
    max_attempts: int = 5

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt + 1``."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def allows(self, attempt: int) -> bool:
        """True while another retry fits in the budget."""
        return attempt < self.max_attempts

    @classmethod
    def from_settings(cls, settings: Optional[ClientSettings] = None) -> "ReconnectPolicy":
        """Build a policy from the ``client`` configuration section."""
        if settings is None:
            settings = get_config().client
        return cls(
            base_delay=settings.reconnect_base_delay,
            max_delay=settings.reconnect_max_delay,
            max_attempts=settings.reconnect_max_attempts,
        )
