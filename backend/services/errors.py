class AttendanceError(Exception):
    """Base for failures a client can recover from by retrying or re-scanning."""

    code = "ERROR"
    status_code = 400
    default_message = "Attendance request failed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class SessionNotFound(AttendanceError):
    code = "SESSION_NOT_FOUND"
    status_code = 404
    default_message = "Session not found."


class SessionEnded(AttendanceError):
    code = "SESSION_ENDED"
    status_code = 409
    default_message = "This session has already ended."


class TokenExpired(AttendanceError):
    code = "TOKEN_EXPIRED"
    status_code = 409
    default_message = "The QR code has expired. Please scan the new code."


class OracleUnavailable(AttendanceError):
    code = "ORACLE_UNAVAILABLE"
    status_code = 503
    default_message = "Verification service is unavailable. Please retry."


class OracleRejected(AttendanceError):
    code = "ORACLE_REJECTED"
    status_code = 422
    default_message = "Verification failed. The faces did not match."


class StoreWriteFailed(AttendanceError):
    code = "STORE_WRITE_FAILED"
    status_code = 503
    default_message = "Could not save to the database. Please retry."


class StoreUnavailable(AttendanceError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    default_message = "Could not read from the database. Please retry."


class InvalidPhoto(AttendanceError):
    code = "INVALID_PHOTO"
    status_code = 400
    default_message = "Invalid photo data."


class FaceNotEnrolled(AttendanceError):
    code = "FACE_NOT_ENROLLED"
    status_code = 409
    default_message = "You must have an enrolled face to mark attendance."
