class BloodMatchError(Exception):
    """Base class for errors raised by the matching core."""


class NotFoundError(BloodMatchError):
    pass


class InvalidTransitionError(BloodMatchError):
    """A donor or requester action is not valid in the current state."""


class ConflictError(BloodMatchError):
    """
    An accept arrived after the request was already fully accepted.
    The attempting match has been marked superseded.
    """

    def __init__(self, message: str, *, request_id: str, donor_id: str) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.donor_id = donor_id


class InputValidationError(BloodMatchError):
    pass


class StoreError(BloodMatchError):
    """Transient failure talking to a store. Safe to retry next cycle."""


class StaleWriteError(StoreError):
    pass
