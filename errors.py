"""Error taxonomy shared by the circulation engine, its store and its front ends."""


class CirculationError(Exception):
    """Base class for every failure the engine reports to a caller."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotFound(CirculationError):
    code = "not_found"


class InvalidArgument(CirculationError):
    code = "invalid_argument"


class Conflict(CirculationError):
    """The book is already held by an open loan.

    ``race`` is True when the storage-level unique index caught a concurrent
    insert that slipped past the conflict check.
    """

    code = "conflict"

    def __init__(self, message: str, race: bool = False) -> None:
        super().__init__(message)
        self.race = race


class InvalidState(CirculationError):
    code = "invalid_state"


class Unavailable(CirculationError):
    code = "unavailable"
