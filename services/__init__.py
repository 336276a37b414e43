from .exceptions import GeolocationError, InvalidInput, Unauthorized, UpstreamUnavailable, PersistenceFailure
from .ip_lookup import GeolocationRecord, ProviderChainResolver
from .persistence import PersistenceGateway
from .auth_guard import AuthGuard
