from .ip_utils import is_valid_ip, parse_loc
