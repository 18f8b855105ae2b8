"""
Request status derivation from unit counters and match count.
"""

from bloodmatch.models import CLOSED_STATUSES, BloodRequest, RequestStatus


def derive_status(
    *,
    units_required: int,
    units_accepted: int,
    units_completed: int,
    match_count: int,
    current: RequestStatus | None = None,
) -> RequestStatus:
    # explicit terminal states are never overridden
    if current in CLOSED_STATUSES:
        return current
    if units_completed >= units_required:
        return RequestStatus.COMPLETED
    if units_accepted >= units_required:
        return RequestStatus.FULLY_MATCHED
    if units_accepted > 0:
        return RequestStatus.PARTIALLY_MATCHED
    if match_count > 0:
        return RequestStatus.MATCHED
    return RequestStatus.PENDING


def refresh_status(request: BloodRequest) -> RequestStatus:
    request.status = derive_status(
        units_required=request.units_required,
        units_accepted=request.units_accepted,
        units_completed=request.units_completed,
        match_count=len(request.matches),
        current=request.status,
    )
    return request.status
