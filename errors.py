"""Error taxonomy shared by the registries, the media engine and the orchestrator.

Every error carries a wire ``code`` (sent in ``error`` events) and an HTTP
``status_code`` (used when the same error escapes a REST handler).
"""


class SignallingError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class NotFound(SignallingError):
    """Room, peer or handle is absent (or not owned by the acting peer)."""

    code = "NOT_FOUND"
    status_code = 404


class RoomFull(SignallingError):
    code = "ROOM_FULL"
    status_code = 409


class RoomExists(SignallingError):
    code = "ROOM_EXISTS"
    status_code = 409


class AlreadyJoined(SignallingError):
    code = "ALREADY_JOINED"
    status_code = 409


class NotInSession(SignallingError):
    """The connection is not bound to a peer/room pair."""

    code = "NOT_IN_SESSION"
    status_code = 400


class Incompatible(SignallingError):
    """The engine reports the request cannot be satisfied (e.g. cannot consume)."""

    code = "INCOMPATIBLE"
    status_code = 422


class EngineUnavailable(SignallingError):
    code = "ENGINE_UNAVAILABLE"
    status_code = 503


class InvalidMessage(SignallingError):
    code = "INVALID_MESSAGE"
    status_code = 400
