"""Tests for the provider fallback chain"""
import logging
from unittest.mock import patch

import pytest
import requests

from services.exceptions import InvalidInput, UpstreamUnavailable
from services.ip_lookup import (
    IpApiCoProvider,
    IpApiComProvider,
    IpInfoProvider,
    ProviderChainResolver,
    SYNTHETIC_RECORD,
    history_fields_from_record,
)
from utils.ip_utils import is_valid_ip, parse_loc

IPINFO_OK = {
    'ip': '8.8.8.8',
    'city': 'Mountain View',
    'region': 'California',
    'country': 'US',
    'loc': '37.4056,-122.0775',
    'org': 'AS15169 Google LLC',
    'postal': '94043',
    'timezone': 'America/Los_Angeles',
}
IPINFO_BOGON = {'ip': '10.0.0.1', 'bogon': True}
IPAPI_CO_OK = {
    'ip': '8.8.8.8',
    'city': 'Mountain View',
    'region': 'California',
    'country_code': 'US',
    'latitude': 37.42301,
    'longitude': -122.083352,
    'org': 'GOOGLE',
    'postal': '94043',
    'timezone': 'America/Los_Angeles',
}
IPAPI_CO_RATE_LIMITED = {'error': True, 'reason': 'RateLimited'}
IP_API_OK = {
    'status': 'success',
    'query': '8.8.8.8',
    'city': 'Ashburn',
    'regionName': 'Virginia',
    'countryCode': 'US',
    'lat': 39.03,
    'lon': -77.5,
    'isp': 'Google LLC',
    'zip': '20149',
    'timezone': 'America/New_York',
}
IP_API_FAIL = {'status': 'fail', 'message': 'private range', 'query': '10.0.0.1'}


@pytest.fixture
def resolver():
    return ProviderChainResolver([IpInfoProvider(), IpApiCoProvider(), IpApiComProvider()])


@pytest.fixture
def upstream(fake_response):
    """Patch requests.get and route by provider host.

    Each host maps to a (status, payload) tuple or an exception instance;
    unlisted hosts fail with a connection error.
    """
    with patch('services.ip_lookup.requests.get') as mock_get:
        def install(**by_host):
            routes = {
                'ipinfo.io': by_host.get('ipinfo', requests.ConnectionError('down')),
                'ipapi.co': by_host.get('ipapi_co', requests.ConnectionError('down')),
                'ip-api.com': by_host.get('ip_api', requests.ConnectionError('down')),
            }

            def fake_get(url, **kwargs):
                for host, outcome in routes.items():
                    if host in url:
                        if isinstance(outcome, Exception):
                            raise outcome
                        return fake_response(*outcome)
                raise AssertionError(f'unexpected url {url}')

            mock_get.side_effect = fake_get
            return mock_get

        yield install


def called_hosts(mock_get):
    return [call.args[0].split('/')[2] for call in mock_get.call_args_list]


class TestIpValidation:

    @pytest.mark.parametrize('ip', [
        '8.8.8.8',
        '10.0.0.1',
        '255.255.255.255',
        '2001:4860:4860::8888',
        '::1',
        '::ffff:192.0.2.1',
    ])
    def test_valid_addresses(self, ip):
        assert is_valid_ip(ip)

    @pytest.mark.parametrize('ip', [
        '256.1.1.1',
        '1.2.3',
        '1.2.3.4.5',
        'example.com',
        '8.8.8.8\'',
        '12345::',
        '::g',
        'fe80::1%eth0',
        ' 8.8.8.8',
        '8.8.8.8\n',
        '::1\n',
        None,
    ])
    def test_invalid_addresses(self, ip):
        assert not is_valid_ip(ip)

    def test_parse_loc(self):
        assert parse_loc('14.6760,121.0437') == (14.676, 121.0437)
        assert parse_loc('91,0') is None
        assert parse_loc('0,181') is None
        assert parse_loc('None,None') is None
        assert parse_loc('') is None
        assert parse_loc('nan,0') is None
        assert parse_loc('0,inf') is None


class TestProviderChainResolver:

    @pytest.mark.parametrize('ip', ['999.1.1.1', 'not-an-ip', '1.2.3', 'gggg::1'])
    def test_malformed_ip_rejected_before_network(self, resolver, upstream, ip):
        mock_get = upstream(ipinfo=(200, IPINFO_OK))

        with pytest.raises(InvalidInput):
            resolver.resolve(ip)

        mock_get.assert_not_called()

    def test_primary_success_contacts_no_other_provider(self, resolver, upstream):
        mock_get = upstream(ipinfo=(200, IPINFO_OK), ipapi_co=(200, IPAPI_CO_OK))

        record = resolver.resolve('8.8.8.8')

        assert record.provenance == 'primary'
        assert record.loc == '37.4056,-122.0775'
        assert record.org == 'AS15169 Google LLC'
        assert called_hosts(mock_get) == ['ipinfo.io']
        assert mock_get.call_args.args[0] == 'https://ipinfo.io/8.8.8.8/json'

    def test_primary_token_is_sent(self, upstream):
        mock_get = upstream(ipinfo=(200, IPINFO_OK))
        resolver = ProviderChainResolver([IpInfoProvider(token='abc123')])

        resolver.resolve('8.8.8.8')

        assert mock_get.call_args.args[0] == 'https://ipinfo.io/8.8.8.8/json?token=abc123'

    def test_secondary_used_when_primary_rate_limited(self, resolver, upstream):
        mock_get = upstream(ipinfo=(429, {'error': 'rate limited'}), ipapi_co=(200, IPAPI_CO_OK))

        record = resolver.resolve('8.8.8.8')

        assert record.provenance == 'secondary'
        assert record.country == 'US'
        assert record.loc == '37.42301,-122.083352'
        assert called_hosts(mock_get) == ['ipinfo.io', 'ipapi.co']

    def test_primary_without_coordinates_advances_chain(self, resolver, upstream):
        upstream(ipinfo=(200, IPINFO_BOGON), ipapi_co=(200, IPAPI_CO_OK))

        record = resolver.resolve('10.0.0.1')

        assert record.provenance == 'secondary'

    def test_secondary_error_marker_falls_through_to_tertiary(self, resolver, upstream):
        mock_get = upstream(ipinfo=(500, None), ipapi_co=(200, IPAPI_CO_RATE_LIMITED), ip_api=(200, IP_API_OK))

        record = resolver.resolve('8.8.8.8')

        assert record.provenance == 'tertiary'
        assert record.region == 'Virginia'
        assert record.country == 'US'
        assert record.org == 'Google LLC'
        assert record.postal == '20149'
        assert record.loc == '39.03,-77.5'
        assert called_hosts(mock_get) == ['ipinfo.io', 'ipapi.co', 'ip-api.com']

    def test_unparseable_body_advances_chain(self, resolver, upstream):
        upstream(ipinfo=(200, ValueError('not json')), ip_api=(200, IP_API_OK))

        record = resolver.resolve('8.8.8.8')

        assert record.provenance == 'tertiary'

    def test_out_of_range_coordinates_advance_chain(self, resolver, upstream):
        upstream(ipinfo=(200, dict(IPINFO_OK, loc='999,0')), ipapi_co=(200, IPAPI_CO_OK))

        assert resolver.resolve('8.8.8.8').provenance == 'secondary'

    def test_total_outage_returns_synthetic_record(self, resolver, upstream):
        upstream(ipinfo=(503, None), ipapi_co=requests.Timeout('slow'), ip_api=(200, IP_API_FAIL))

        record = resolver.resolve('8.8.8.8')

        assert record.provenance == 'synthetic'
        assert record.ip == '8.8.8.8'
        for key, value in SYNTHETIC_RECORD.items():
            assert getattr(record, key) == value

    def test_synthetic_record_for_own_address(self, resolver, upstream):
        mock_get = upstream()

        record = resolver.resolve('')

        assert record.provenance == 'synthetic'
        assert record.ip == '127.0.0.1'
        assert [call.args[0] for call in mock_get.call_args_list] == [
            'https://ipinfo.io/json',
            'https://ipapi.co/json/',
            'http://ip-api.com/json/',
        ]

    def test_outage_raises_when_synthetic_fallback_disabled(self, upstream):
        upstream()
        resolver = ProviderChainResolver(
            [IpInfoProvider(), IpApiCoProvider(), IpApiComProvider()], synthetic_fallback=False
        )

        with pytest.raises(UpstreamUnavailable):
            resolver.resolve('8.8.8.8')

    @pytest.mark.parametrize('outcomes', [
        {'ipinfo': (200, IPINFO_OK)},
        {'ipapi_co': (200, IPAPI_CO_OK)},
        {'ip_api': (200, IP_API_OK)},
        {},
    ])
    def test_loc_always_present(self, resolver, upstream, outcomes):
        upstream(**outcomes)

        record = resolver.resolve('8.8.8.8')

        assert parse_loc(record.loc) is not None

    def test_each_stage_is_traced(self, resolver, upstream, caplog):
        upstream(ipinfo=(429, None), ip_api=(200, IP_API_OK))
        caplog.set_level(logging.INFO, logger='services.ip_lookup')

        resolver.resolve('8.8.8.8')

        messages = [r.getMessage() for r in caplog.records]
        assert any('ipinfo.io' in m and 'http 429' in m for m in messages)
        assert any('ipapi.co' in m and 'request failed' in m for m in messages)
        assert any('ip-api.com' in m and 'resolved' in m for m in messages)

    def test_from_config(self):
        resolver = ProviderChainResolver.from_config({
            'IPINFO_TOKEN': 'tok', 'PROVIDER_TIMEOUT': 2, 'SYNTHETIC_FALLBACK_ENABLED': False,
        })

        assert [p.provenance for p in resolver.providers] == ['primary', 'secondary', 'tertiary']
        assert resolver.providers[0].token == 'tok'
        assert all(p.timeout == 2 for p in resolver.providers)
        assert resolver.synthetic_fallback is False


def test_history_fields_from_record(resolver, upstream):
    upstream(ipinfo=(200, IPINFO_OK))
    record = resolver.resolve('8.8.8.8')

    fields = history_fields_from_record(record)

    assert fields['ipAddress'] == '8.8.8.8'
    assert fields['isp'] == 'AS15169 Google LLC'
    assert fields['asn'] == 'AS15169'
    assert fields['latitude'] == 37.4056
    assert fields['longitude'] == -122.0775
    assert fields['geoInfo']['provenance'] == 'primary'
