import contextlib
import dataclasses
import logging
import threading
import typing as t

from .models import v1beta1 as api


LOGGER = logging.getLogger(__name__)


#: The states of installations that count towards the reconciling limit
ACTIVE_STATES = {api.RunningState.RECONCILING, api.RunningState.READY}


@dataclasses.dataclass(frozen=True)
class Admission:
    """
    The outcome of an admission decision.
    """

    granted: bool
    requeue_after: t.Optional[int] = None


class AdmissionLimiter:
    """
    Bounds the number of installations that can be converging at the same time.

    Installations that are already reconciling or ready are always admitted. Others are
    admitted only if the number of installations persisted as active plus the number
    of passes admitted by this process that are still in flight is below the limit.
    """

    def __init__(self, count_active, max_reconciling, requeue_delay):
        #: Coroutine function returning the number of active installations
        self._count_active = count_active
        self.max_reconciling = max_reconciling
        self.requeue_delay = requeue_delay
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def in_flight(self):
        return self._in_flight

    @contextlib.asynccontextmanager
    async def admit(self, instance: api.Mattermost):
        """
        Context manager that yields an admission decision for the given installation.

        A granted admission holds a slot until the context exits.
        """
        if instance.status.state in ACTIVE_STATES:
            yield Admission(True)
            return
        active = await self._count_active()
        with self._lock:
            granted = active + self._in_flight < self.max_reconciling
            if granted:
                self._in_flight = self._in_flight + 1
        if not granted:
            LOGGER.info(
                "deferring %s/%s - %d installations are reconciling (limit %d)",
                instance.metadata.namespace,
                instance.metadata.name,
                active + self._in_flight,
                self.max_reconciling,
            )
            yield Admission(False, self.requeue_delay)
            return
        try:
            yield Admission(True)
        finally:
            with self._lock:
                self._in_flight = self._in_flight - 1
