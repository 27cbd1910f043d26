from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from otpgate.services.backends import Deadline
from otpgate.services.selector import BackendSelector

LOGGER = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        selector: BackendSelector,
        max_per_window: int = 5,
        window: timedelta = timedelta(hours=24),
    ) -> None:
        self._selector = selector
        self._max_per_window = max_per_window
        self._window = window

    @property
    def window(self) -> timedelta:
        return self._window

    def allow(self, identity: str, deadline: Optional[Deadline] = None) -> bool:
        # Count failures propagate; only a missing schema is retried (by the selector).
        count = self._selector.run(
            lambda backend: backend.count_since(identity, self._window, deadline),
            deadline,
        )
        if count >= self._max_per_window:
            LOGGER.info(
                "OTP issuance denied for %s: %d codes in the last %s",
                identity,
                count,
                self._window,
            )
            return False
        return True
