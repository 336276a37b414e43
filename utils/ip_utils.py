import re
import ipaddress
import math

IPV4_PATTERN = re.compile(r'(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)')
IPV6_CHARS = re.compile(r'[0-9A-Fa-f:.]+')

MAX_LATITUDE = 90.0
MAX_LONGITUDE = 180.0


def is_valid_ip(ip):
    """Validate IPv4 dotted-quad or IPv6 colon-hex syntax"""
    if not ip or not isinstance(ip, str):
        return False

    if IPV4_PATTERN.fullmatch(ip):
        return True

    # IPv6 may embed a dotted-quad tail (::ffff:1.2.3.4) but never a zone id
    if ':' not in ip or not IPV6_CHARS.fullmatch(ip):
        return False

    try:
        ipaddress.IPv6Address(ip)
    except ValueError:
        return False

    return True


def parse_loc(loc):
    """Split a "lat,lng" string into floats, or return None if unusable"""
    if not loc or not isinstance(loc, str):
        return None

    parts = loc.split(',')
    if len(parts) != 2:
        return None

    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        return None

    if not (coordinate_in_range(lat, MAX_LATITUDE) and coordinate_in_range(lng, MAX_LONGITUDE)):
        return None

    return lat, lng


def coordinate_in_range(value, limit):
    """True for a finite float within [-limit, limit]"""
    return math.isfinite(value) and -limit <= value <= limit
