"""Error taxonomy shared by the scheduling core and the HTTP edge."""


class CheckInError(Exception):
    status_code = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'success': False, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class InvalidConfiguration(CheckInError):
    """A check-in window config with an unknown day name or a malformed time."""
    status_code = 400


class InvalidArgument(CheckInError):
    status_code = 400


class NotFound(CheckInError):
    status_code = 404


class ExternalFailure(CheckInError):
    """The mailer or the store failed; retried on the next scheduled tick."""
    status_code = 502


class Forbidden(CheckInError):
    status_code = 403
