"""
Domain error taxonomy.

Services raise these; the HTTP boundary in main.py turns them into
JSON responses carrying ``status_code``.
"""


class LimsError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(LimsError):
    status_code = 400
    default_message = "Invalid request"


class Unauthenticated(LimsError):
    status_code = 401
    default_message = "Not authorized"


class Forbidden(LimsError):
    status_code = 403
    default_message = "Insufficient permissions"


class NotFound(LimsError):
    status_code = 404
    default_message = "Not found"


class Conflict(LimsError):
    status_code = 409
    default_message = "Conflict"


class StoreTimeout(LimsError):
    status_code = 504
    default_message = "The data store did not respond in time"
