"""
Request Registry

In-process index of every ChangeRequest a governor has produced. The
durable audit log is the source of truth; this registry is a query cache
that can be rebuilt from it.

The lock guards only in-memory state and is never held across collaborator
I/O, so concurrent requests do not serialize on each other.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional

from change_governor.models import ChangeRequest, ChangeRequestStatus


class RequestRegistry:
    """Thread-safe map of request id -> ChangeRequest.

    Callers always receive deep copies, so a returned request cannot be
    used to mutate registry state. A stored request changes only through
    ``claim`` followed by ``commit``; a claimed request keeps its old status
    until the commit lands.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests: dict[str, ChangeRequest] = {}
        self._sequence: dict[str, int] = {}
        self._claims: set[str] = set()
        self._next_seq = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)

    def add(self, request: ChangeRequest) -> None:
        with self._lock:
            if request.id in self._requests:
                raise ValueError(f"Duplicate change request id: {request.id}")
            self._requests[request.id] = request.model_copy(deep=True)
            self._sequence[request.id] = self._next_seq
            self._next_seq += 1

    def get(self, request_id: str) -> Optional[ChangeRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            return request.model_copy(deep=True) if request is not None else None

    def snapshot(self) -> list[tuple[int, ChangeRequest]]:
        """All requests with their insertion sequence, oldest first."""
        with self._lock:
            return [
                (self._sequence[rid], req.model_copy(deep=True))
                for rid, req in self._requests.items()
            ]

    def claim(
        self,
        request_id: str,
        expected: ChangeRequestStatus,
    ) -> Optional[ChangeRequest]:
        """Reserve a request for resolution while its status is ``expected``.

        The stored request is left untouched, so readers keep seeing the
        current status until ``commit``. Returns a copy of the claimed
        request, or None when it is missing or not in ``expected`` state.
        A request already claimed by another resolver also yields None.
        """
        with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status != expected or request_id in self._claims:
                return None
            self._claims.add(request_id)
            return current.model_copy(deep=True)

    def commit(self, request: ChangeRequest) -> None:
        """Store the resolved form of a claimed request and drop the claim."""
        with self._lock:
            if request.id not in self._claims:
                raise ValueError(f"Change request {request.id} is not claimed")
            self._requests[request.id] = request.model_copy(deep=True)
            self._claims.discard(request.id)

    def release(self, request_id: str) -> None:
        """Drop a claim without changing the stored request."""
        with self._lock:
            self._claims.discard(request_id)

    def filter(self, predicate: Callable[[ChangeRequest], bool]) -> list[ChangeRequest]:
        return [req for _, req in self.snapshot() if predicate(req)]
