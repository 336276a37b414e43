import logging
from dataclasses import dataclass, asdict

import requests

from utils.ip_utils import is_valid_ip, parse_loc
from .exceptions import InvalidInput, UpstreamUnavailable

_logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5
REQUEST_HEADERS = {
    'User-Agent': 'GeoDashboard/1.0',
    'Accept': 'application/json'
}

SYNTHETIC_RECORD = {
    'city': 'Quezon City',
    'region': 'Metro Manila',
    'country': 'PH',
    'loc': '14.6760,121.0437',
    'org': 'Mock Provider (Rate Limited)',
    'postal': '1100',
    'timezone': 'Asia/Manila',
}


@dataclass
class GeolocationRecord:
    ip: str
    city: str = None
    region: str = None
    country: str = None
    loc: str = None
    org: str = None
    postal: str = None
    timezone: str = None
    provenance: str = None

    def to_dict(self):
        return asdict(self)


class GeoProvider:
    """One upstream geolocation API.

    Subclasses build the request URL and map the provider's own response
    shape onto a GeolocationRecord. Any failure, including a 2xx body
    without usable coordinates, raises UpstreamUnavailable.
    """

    name = None
    provenance = None

    def __init__(self, timeout=DEFAULT_TIMEOUT):
        self.timeout = timeout

    def build_url(self, ip):
        raise NotImplementedError

    def normalize(self, ip, data):
        raise NotImplementedError

    def resolve(self, ip):
        url = self.build_url(ip)
        try:
            response = requests.get(url, timeout=self.timeout, headers=REQUEST_HEADERS)
        except requests.RequestException as e:
            raise UpstreamUnavailable(self.name, f'request failed: {e}')

        if not 200 <= response.status_code < 300:
            raise UpstreamUnavailable(self.name, f'http {response.status_code}')

        try:
            data = response.json()
        except ValueError:
            raise UpstreamUnavailable(self.name, 'unparseable body')

        if not isinstance(data, dict):
            raise UpstreamUnavailable(self.name, 'unparseable body')

        record = self.normalize(ip, data)
        if parse_loc(record.loc) is None:
            raise UpstreamUnavailable(self.name, 'no coordinates')

        record.provenance = self.provenance
        return record


class IpInfoProvider(GeoProvider):
    name = 'ipinfo.io'
    provenance = 'primary'

    def __init__(self, token=None, timeout=DEFAULT_TIMEOUT):
        super().__init__(timeout)
        self.token = token

    def build_url(self, ip):
        url = f'https://ipinfo.io/{ip + "/" if ip else ""}json'
        if self.token:
            url += f'?token={self.token}'
        return url

    def normalize(self, ip, data):
        # ipinfo already speaks the canonical field names
        return GeolocationRecord(
            ip=data.get('ip') or ip,
            city=data.get('city'),
            region=data.get('region'),
            country=data.get('country'),
            loc=data.get('loc'),
            org=data.get('org'),
            postal=data.get('postal'),
            timezone=data.get('timezone'),
        )


class IpApiCoProvider(GeoProvider):
    name = 'ipapi.co'
    provenance = 'secondary'

    def build_url(self, ip):
        return f'https://ipapi.co/{ip + "/" if ip else ""}json/'

    def normalize(self, ip, data):
        if data.get('error'):
            raise UpstreamUnavailable(self.name, f"error marker: {data.get('reason', 'unknown')}")

        lat, lng = data.get('latitude'), data.get('longitude')
        return GeolocationRecord(
            ip=data.get('ip') or ip,
            city=data.get('city'),
            region=data.get('region'),
            country=data.get('country_code'),
            loc=f'{lat},{lng}' if lat is not None and lng is not None else None,
            org=data.get('org'),
            postal=data.get('postal'),
            timezone=data.get('timezone'),
        )


class IpApiComProvider(GeoProvider):
    name = 'ip-api.com'
    provenance = 'tertiary'

    def build_url(self, ip):
        # Free tier is http only
        return f'http://ip-api.com/json/{ip}'

    def normalize(self, ip, data):
        if data.get('status') != 'success':
            raise UpstreamUnavailable(self.name, f"status {data.get('status')}: {data.get('message')}")

        lat, lng = data.get('lat'), data.get('lon')
        return GeolocationRecord(
            ip=data.get('query') or ip,
            city=data.get('city'),
            region=data.get('regionName'),
            country=data.get('countryCode'),
            loc=f'{lat},{lng}' if lat is not None and lng is not None else None,
            org=data.get('isp'),
            postal=data.get('zip'),
            timezone=data.get('timezone'),
        )


class ProviderChainResolver:
    """Resolve an IP by walking providers in order, one attempt each.

    The first provider yielding usable coordinates wins. When every
    provider fails, a fixed synthetic record is returned instead, unless
    ``synthetic_fallback`` is disabled, in which case UpstreamUnavailable
    is raised.
    """

    def __init__(self, providers, synthetic_fallback=True):
        self.providers = list(providers)
        self.synthetic_fallback = synthetic_fallback

    @classmethod
    def from_config(cls, config):
        timeout = config.get('PROVIDER_TIMEOUT', DEFAULT_TIMEOUT)
        providers = [
            IpInfoProvider(token=config.get('IPINFO_TOKEN'), timeout=timeout),
            IpApiCoProvider(timeout=timeout),
            IpApiComProvider(timeout=timeout),
        ]
        return cls(providers, synthetic_fallback=config.get('SYNTHETIC_FALLBACK_ENABLED', True))

    def init_app(self, app):
        app.extensions['geolocation'] = self

    def resolve(self, ip=''):
        ip = (ip or '').strip()
        if ip and not is_valid_ip(ip):
            raise InvalidInput('Invalid IP address')

        target = ip or 'current'
        for provider in self.providers:
            try:
                record = provider.resolve(ip)
            except UpstreamUnavailable as e:
                _logger.warning(f"Provider {provider.name} failed for {target}: {e.reason}")
                continue
            _logger.info(f"Provider {provider.name} resolved {target}")
            return record

        if not self.synthetic_fallback:
            _logger.error(f"All providers failed for {target}")
            raise UpstreamUnavailable('chain', 'all providers failed')

        _logger.warning(f"All providers failed for {target}, using synthetic record")
        return synthetic_record(ip)


def synthetic_record(ip=''):
    return GeolocationRecord(ip=ip or '127.0.0.1', provenance='synthetic', **SYNTHETIC_RECORD)


def history_fields_from_record(record):
    """Map a resolved record onto SearchHistory fields"""
    lat, lng = parse_loc(record.loc)
    org = record.org or ''
    return {
        'ipAddress': record.ip,
        'city': record.city,
        'region': record.region,
        'country': record.country,
        'isp': record.org,
        'asn': org.split()[0] if org.startswith('AS') else None,
        'timezone': record.timezone,
        'latitude': lat,
        'longitude': lng,
        'geoInfo': record.to_dict(),
    }
