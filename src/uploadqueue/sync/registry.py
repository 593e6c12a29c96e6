"""Registry of transport calls currently in flight, keyed by job id."""

import itertools
import logging
from dataclasses import dataclass

from uploadqueue.sync.transport import CancelHandle

logger = logging.getLogger(__name__)


@dataclass
class InFlightRequest:
    """An outstanding transport call for one job."""

    job_id: str
    handle: CancelHandle
    token: int


class RequestRegistry:
    """Maps job ids to the cancelable handle of their outstanding upload.

    Every registration gets a fresh token so a late terminal callback from a
    superseded call cannot remove the entry of the call that replaced it.
    Ids without an upload in flight simply have no entry.
    """

    def __init__(self) -> None:
        self._requests: dict[str, InFlightRequest] = {}
        self._tokens = itertools.count(1)

    def register(self, job_id: str, handle: CancelHandle) -> InFlightRequest:
        """Track a newly issued transport call, replacing any previous entry."""
        request = InFlightRequest(job_id=job_id, handle=handle, token=next(self._tokens))
        self._requests[job_id] = request
        return request

    def get(self, job_id: str) -> InFlightRequest | None:
        return self._requests.get(job_id)

    def is_current(self, job_id: str, token: int) -> bool:
        """Whether the call with this token is still the registered one."""
        request = self._requests.get(job_id)
        return request is not None and request.token == token

    def pop(self, job_id: str, token: int | None = None) -> InFlightRequest | None:
        """Remove and return the entry for job_id.

        When a token is given the entry is only removed if it matches.
        """
        request = self._requests.get(job_id)
        if request is None:
            return None
        if token is not None and request.token != token:
            return None
        return self._requests.pop(job_id)

    def cancel(self, job_id: str) -> bool:
        """Cancel and forget the call for job_id.

        Returns:
            True if a call was registered for the id
        """
        request = self._requests.pop(job_id, None)
        if request is None:
            return False
        self._cancel_handle(request)
        return True

    def cancel_all(self) -> int:
        """Cancel every outstanding call. Returns how many were cancelled."""
        requests = list(self._requests.values())
        self._requests.clear()
        for request in requests:
            self._cancel_handle(request)
        return len(requests)

    @staticmethod
    def _cancel_handle(request: InFlightRequest) -> None:
        try:
            request.handle.cancel()
        except Exception as e:
            logger.warning("Cancel failed for job %s: %s", request.job_id, e)

    def job_ids(self) -> set[str]:
        return set(self._requests)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._requests

    def __len__(self) -> int:
        return len(self._requests)
