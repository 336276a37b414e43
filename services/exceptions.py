class GeolocationError(Exception):
    """Base for errors that map onto an HTTP status"""

    status_code = 500
    message = 'Internal Server Error'

    def __init__(self, message=None):
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidInput(GeolocationError):
    status_code = 400
    message = 'Invalid input'


class Unauthorized(GeolocationError):
    status_code = 401
    message = 'Unauthorized'


class UpstreamUnavailable(GeolocationError):
    """A provider stage failed; masked by the chain unless every stage fails"""

    status_code = 503
    message = 'Geolocation providers unavailable'

    def __init__(self, provider=None, reason=None):
        super().__init__()
        self.provider = provider
        self.reason = reason

    def __str__(self):
        return f'{self.provider}: {self.reason}'


class PersistenceFailure(GeolocationError):
    status_code = 500
    message = 'Internal Server Error'
