from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, TypeVar

from otpgate.services.backends import Deadline, OtpBackend, SchemaMissingError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class SelectorState:
    """Sticky availability flag for the durable backend.

    Owned by whoever builds the OTP service, so separate services (and tests)
    never share a failover decision by accident.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self._probed = False
        self._durable_available = True

    @property
    def probed(self) -> bool:
        return self._probed

    @property
    def durable_available(self) -> bool:
        return self._durable_available

    def mark_probed(self) -> None:
        self._probed = True

    def mark_durable_unavailable(self) -> bool:
        """Flip to the fallback once; returns False if already flipped."""
        if not self._durable_available:
            return False
        self._durable_available = False
        self._probed = True
        return True


class BackendSelector:
    def __init__(
        self,
        durable: OtpBackend,
        fallback: OtpBackend,
        state: Optional[SelectorState] = None,
    ) -> None:
        self._durable = durable
        self._fallback = fallback
        self._state = state or SelectorState()

    @property
    def state(self) -> SelectorState:
        return self._state

    @property
    def active_backend_name(self) -> str:
        if not self._state.durable_available:
            return self._fallback.name
        if not self._state.probed:
            return "unprobed"
        return self._durable.name

    def resolve(self, deadline: Optional[Deadline] = None) -> OtpBackend:
        if not self._state.durable_available:
            return self._fallback
        if self._state.probed:
            return self._durable
        with self._state.lock:
            if not self._state.durable_available:
                return self._fallback
            if not self._state.probed:
                try:
                    self._durable.probe(deadline)
                except SchemaMissingError:
                    self._fail_over("probe")
                    return self._fallback
                self._state.mark_probed()
        return self._durable

    def run(
        self,
        operation: Callable[[OtpBackend], T],
        deadline: Optional[Deadline] = None,
    ) -> T:
        backend = self.resolve(deadline)
        try:
            return operation(backend)
        except SchemaMissingError:
            if backend is not self._durable:
                raise
            with self._state.lock:
                self._fail_over("operation")
        return operation(self._fallback)

    def _fail_over(self, stage: str) -> None:
        if self._state.mark_durable_unavailable():
            LOGGER.warning(
                "OTP tables missing in durable store (detected during %s); "
                "using %s backend for the rest of this process",
                stage,
                self._fallback.name,
            )
