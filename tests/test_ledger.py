import pytest

from bloodmatch.ledger import derive_status
from bloodmatch.models import RequestStatus


@pytest.mark.parametrize(
    "accepted, completed, matches, current, expected",
    [
        (0, 0, 0, None, RequestStatus.PENDING),
        (0, 0, 3, RequestStatus.PENDING, RequestStatus.MATCHED),
        (1, 0, 3, RequestStatus.MATCHED, RequestStatus.PARTIALLY_MATCHED),
        (2, 0, 3, RequestStatus.PARTIALLY_MATCHED, RequestStatus.FULLY_MATCHED),
        (2, 1, 3, RequestStatus.FULLY_MATCHED, RequestStatus.FULLY_MATCHED),
        (2, 2, 3, RequestStatus.FULLY_MATCHED, RequestStatus.COMPLETED),
        (2, 3, 3, RequestStatus.FULLY_MATCHED, RequestStatus.COMPLETED),
        (2, 2, 3, RequestStatus.CANCELLED, RequestStatus.CANCELLED),
        (0, 0, 0, RequestStatus.EXPIRED, RequestStatus.EXPIRED),
    ],
)
def test_status_precedence(accepted, completed, matches, current, expected):
    assert (
        derive_status(
            units_required=2,
            units_accepted=accepted,
            units_completed=completed,
            match_count=matches,
            current=current,
        )
        == expected
    )


def test_completed_status_is_rederived_not_sticky():
    # only cancelled/expired are preserved as-is
    assert (
        derive_status(
            units_required=2,
            units_accepted=1,
            units_completed=0,
            match_count=2,
            current=RequestStatus.COMPLETED,
        )
        == RequestStatus.PARTIALLY_MATCHED
    )
