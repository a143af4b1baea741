"""Signup intake: storefront form submissions, deduplicated per tenant.

A submission is first validated against SIGNUP_PAYLOAD_SCHEMA. Then:

1. An ``idempotencyKey`` that matches an existing request returns that
   request (``is_existing=True``) without writing anything.
2. An email that, canonicalized, matches any existing request of the tenant
   fails with DuplicateSubmissionError.
3. Otherwise a new ``pending`` request is stored.

Steps 1-3 are separate repository calls, not one atomic write. Two clients
submitting the same new email at the same moment can both pass step 2; that
narrow window is an accepted risk for stores without a unique constraint on
the canonical email.

Admins review requests afterwards: pending -> approved | rejected.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
import itertools
import logging
import math
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from dateutil.parser import isoparse

from formpublisher.errors import (
    DuplicateSubmissionError,
    InvalidSubmissionError,
    RequestNotFoundError,
)
from formpublisher.events import EventEmitter, utcnow
from formpublisher.state_machine import REVIEW_TRANSITIONS, check_transition
from formpublisher.types import Actor, EventType, RequestStatus
from formpublisher.validation import ValidationEngine, signup_payload_validator

logger = logging.getLogger(__name__)

TREND_WINDOW = timedelta(days=7)


def canonical_email(email: Optional[str]) -> Optional[str]:
    """Lower-cased, stripped email, or None when blank.

    Examples:
        >>> canonical_email("  Ada@Example.COM ")
        'ada@example.com'
        >>> canonical_email("   ") is None
        True
    """
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class SignupRequest:
    """A storefront signup awaiting (or past) admin review."""
    id: str
    tenant: str
    data: Dict[str, Any]
    status: RequestStatus = RequestStatus.PENDING
    email: Optional[str] = None
    idempotency_key: Optional[str] = None
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant": self.tenant,
            "email": self.email,
            "idempotencyKey": self.idempotency_key,
            "data": self.data,
            "status": self.status.value,
            "submittedAt": _isoformat(self.submitted_at),
            "reviewedAt": _isoformat(self.reviewed_at),
            "meta": self.meta,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignupRequest":
        submitted_at = data.get("submittedAt")
        reviewed_at = data.get("reviewedAt")
        return cls(
            id=data["id"],
            tenant=data["tenant"],
            data=dict(data.get("data") or {}),
            status=RequestStatus(data.get("status", RequestStatus.PENDING.value)),
            email=data.get("email"),
            idempotency_key=data.get("idempotencyKey"),
            submitted_at=isoparse(submitted_at) if submitted_at else None,
            reviewed_at=isoparse(reviewed_at) if reviewed_at else None,
            meta=dict(data.get("meta") or {}),
        )


@dataclass(frozen=True)
class SubmitResult:
    id: str
    is_existing: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": True, "id": self.id, "isExisting": self.is_existing}


@dataclass(frozen=True)
class RequestPage:
    """One page of requests, newest first. Pass ``next_cursor`` to get the next."""
    items: List[SignupRequest]
    next_cursor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [r.to_dict() for r in self.items],
            "nextCursor": self.next_cursor,
        }


@dataclass(frozen=True)
class RequestStats:
    """Request counts of a tenant and the weekly submission trend.

    Attributes:
        total: Every stored request
        pending: Requests awaiting review
        approved: Approved requests
        rejected: Rejected requests
        current_period: Submissions in the last seven days
        previous_period: Submissions in the seven days before that
        trend_percentage: Change from the previous to the current period,
            rounded; 100 when only the current period has submissions, None
            when neither has any
    """
    total: int
    pending: int
    approved: int
    rejected: int
    current_period: int
    previous_period: int
    trend_percentage: Optional[int] = None

    @property
    def trend_up(self) -> bool:
        return self.trend_percentage is None or self.trend_percentage >= 0

    @property
    def trend(self) -> Optional[str]:
        """Signed display form, e.g. ``+25%`` or ``-40%``."""
        if self.trend_percentage is None:
            return None
        sign = "+" if self.trend_up else ""
        return f"{sign}{self.trend_percentage}%"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "approved": self.approved,
            "rejected": self.rejected,
            "trend": self.trend,
            "trendUp": self.trend_up,
        }


def trend_percentage(current: int, previous: int) -> Optional[int]:
    """Percentage change between two periods, rounded half up.

    Examples:
        >>> trend_percentage(5, 4)
        25
        >>> trend_percentage(3, 0)
        100
        >>> trend_percentage(0, 0) is None
        True
    """
    if previous > 0:
        return math.floor((current - previous) / previous * 100 + 0.5)
    if current > 0:
        return 100
    return None


class InMemoryRequestRepository:
    """Thread-safe request storage keyed by tenant.

    Each call is atomic on its own; nothing spans calls.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._requests: Dict[str, Dict[str, SignupRequest]] = {}
        self._order: Dict[str, int] = {}
        self._counter = itertools.count()

    def find_by_idempotency_key(
        self, tenant: str, key: str
    ) -> Optional[SignupRequest]:
        with self._lock:
            for request in self._requests.get(tenant, {}).values():
                if request.idempotency_key == key:
                    return request
        return None

    def find_by_email(self, tenant: str, email: str) -> Optional[SignupRequest]:
        with self._lock:
            for request in self._requests.get(tenant, {}).values():
                if request.email == email:
                    return request
        return None

    def insert(self, request: SignupRequest) -> None:
        with self._lock:
            self._requests.setdefault(request.tenant, {})[request.id] = request
            self._order[request.id] = next(self._counter)

    def update(self, request: SignupRequest) -> None:
        with self._lock:
            if request.id not in self._requests.get(request.tenant, {}):
                raise RequestNotFoundError(request.tenant, request.id)
            self._requests[request.tenant][request.id] = request

    def get(self, tenant: str, request_id: str) -> Optional[SignupRequest]:
        with self._lock:
            return self._requests.get(tenant, {}).get(request_id)

    def delete(self, tenant: str, request_id: str) -> bool:
        with self._lock:
            removed = self._requests.get(tenant, {}).pop(request_id, None)
            self._order.pop(request_id, None)
            return removed is not None

    def list(
        self, tenant: str, status: Optional[RequestStatus] = None
    ) -> List[SignupRequest]:
        """Requests of a tenant, newest first."""
        with self._lock:
            requests = [
                r for r in self._requests.get(tenant, {}).values()
                if status is None or r.status == status
            ]
            return sorted(requests, key=lambda r: self._order[r.id], reverse=True)


class SignupIntake:
    """Accepts, deduplicates and reviews signup requests.

    Examples:
        >>> intake = SignupIntake()
        >>> payload = {"email": "a@b.co", "data": {}, "idempotencyKey": "k1"}
        >>> first = intake.submit("store_1", payload)
        >>> intake.submit("store_1", payload).is_existing
        True
    """

    def __init__(
        self,
        repository: Optional[InMemoryRequestRepository] = None,
        emitter: Optional[EventEmitter] = None,
        clock: Optional[Callable[[], datetime]] = None,
        validator: ValidationEngine = signup_payload_validator,
        page_size: int = 10,
    ):
        self.repository = repository or InMemoryRequestRepository()
        self.emitter = emitter or EventEmitter()
        self._clock = clock or utcnow
        self._validator = validator
        self.page_size = page_size

    def submit(
        self,
        tenant: str,
        payload: Dict[str, Any],
        actor: Optional[Actor] = None,
        idempotency_key: Optional[str] = None,
    ) -> SubmitResult:
        """Record a submission.

        Args:
            tenant: Store the form belongs to
            payload: ``{email?, idempotencyKey?, data, meta?}``
            actor: Who submitted (usually the storefront)
            idempotency_key: Key supplied out of band (e.g. a request header);
                wins over the one in the payload

        Raises:
            InvalidSubmissionError: If the payload fails validation
            DuplicateSubmissionError: If a request with the same email exists
        """
        result = self._validator.validate(payload)
        if not result.is_valid:
            raise InvalidSubmissionError("Invalid signup request", fields=result.errors)

        key = (
            idempotency_key
            or payload.get("idempotencyKey")
            or payload.get("idempotency_key")
        )
        if key:
            existing = self.repository.find_by_idempotency_key(tenant, key)
            if existing is not None:
                logger.info(
                    f"Idempotent signup replay: tenant={tenant} id={existing.id}"
                )
                return SubmitResult(id=existing.id, is_existing=True)

        email = canonical_email(payload.get("email"))
        if email:
            existing = self.repository.find_by_email(tenant, email)
            if existing is not None:
                logger.info(
                    f"Duplicate signup rejected: tenant={tenant} existing={existing.id}"
                )
                self.emitter.emit_new(
                    EventType.SIGNUP_DUPLICATE,
                    tenant,
                    {"requestId": existing.id},
                    actor,
                )
                raise DuplicateSubmissionError(
                    email, existing.id, existing.status.value
                )

        meta = payload.get("meta") or {}
        request = SignupRequest(
            id=f"req_{uuid.uuid4().hex[:16]}",
            tenant=tenant,
            data=dict(payload["data"]),
            email=email,
            idempotency_key=key or None,
            submitted_at=self._clock(),
            meta={k: meta.get(k) for k in ("ip", "origin", "userAgent")},
        )
        self.repository.insert(request)
        logger.info(f"Signup request created: tenant={tenant} id={request.id}")
        self.emitter.emit_new(
            EventType.SIGNUP_RECEIVED, tenant, {"requestId": request.id}, actor
        )
        return SubmitResult(id=request.id, is_existing=False)

    def get(self, tenant: str, request_id: str) -> SignupRequest:
        request = self.repository.get(tenant, request_id)
        if request is None:
            raise RequestNotFoundError(tenant, request_id)
        return request

    def list_requests(
        self,
        tenant: str,
        status: Optional[Union[RequestStatus, str]] = None,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> RequestPage:
        """List requests newest first, one page at a time.

        ``cursor`` is the id of the last request of the previous page.

        Raises:
            RequestNotFoundError: If the cursor names no listed request
        """
        status = RequestStatus(status) if status is not None else None
        size = max(1, page_size or self.page_size)
        requests = self.repository.list(tenant, status)
        start = 0
        if cursor:
            ids = [r.id for r in requests]
            if cursor not in ids:
                raise RequestNotFoundError(tenant, cursor)
            start = ids.index(cursor) + 1
        items = requests[start:start + size]
        has_more = start + size < len(requests)
        next_cursor = items[-1].id if has_more and items else None
        return RequestPage(items=items, next_cursor=next_cursor)

    def stats(self, tenant: str, now: Optional[datetime] = None) -> RequestStats:
        """Count requests per status and compare the last two weeks.

        The current period is every submission at or after ``now`` minus
        seven days; the previous one is the seven days before that. Requests
        without a submission time count towards the totals only.
        """
        now = now or self._clock()
        current_start = now - TREND_WINDOW
        previous_start = current_start - TREND_WINDOW
        requests = self.repository.list(tenant)

        counts = {status: 0 for status in RequestStatus}
        current = previous = 0
        for request in requests:
            counts[request.status] += 1
            submitted_at = request.submitted_at
            if submitted_at is None:
                continue
            if submitted_at >= current_start:
                current += 1
            elif submitted_at >= previous_start:
                previous += 1

        return RequestStats(
            total=len(requests),
            pending=counts[RequestStatus.PENDING],
            approved=counts[RequestStatus.APPROVED],
            rejected=counts[RequestStatus.REJECTED],
            current_period=current,
            previous_period=previous,
            trend_percentage=trend_percentage(current, previous),
        )

    def review(
        self,
        tenant: str,
        request_id: str,
        status: Union[RequestStatus, str],
        actor: Optional[Actor] = None,
    ) -> SignupRequest:
        """Approve or reject a pending request.

        Raises:
            RequestNotFoundError: If the request does not exist
            InvalidStateTransitionError: If the request was already reviewed
        """
        status = RequestStatus(status)
        request = self.get(tenant, request_id)
        check_transition(REVIEW_TRANSITIONS, request.status, status)
        reviewed = replace(request, status=status, reviewed_at=self._clock())
        self.repository.update(reviewed)
        logger.info(f"Signup request {status.value}: tenant={tenant} id={request_id}")
        self.emitter.emit_new(
            EventType.SIGNUP_REVIEWED,
            tenant,
            {"requestId": request_id, "status": status.value},
            actor,
        )
        return reviewed

    def delete(self, tenant: str, request_id: str) -> None:
        if not self.repository.delete(tenant, request_id):
            raise RequestNotFoundError(tenant, request_id)
        logger.info(f"Signup request deleted: tenant={tenant} id={request_id}")


__all__ = [
    "TREND_WINDOW",
    "canonical_email",
    "trend_percentage",
    "SignupRequest",
    "SubmitResult",
    "RequestPage",
    "RequestStats",
    "InMemoryRequestRepository",
    "SignupIntake",
]
