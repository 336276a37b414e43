import logging
import sys

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_login import current_user, login_required
from werkzeug.exceptions import HTTPException

from config import Config
from models import db
from models.user import hash_password
from services.auth_guard import AuthGuard
from services.exceptions import GeolocationError, InvalidInput, PersistenceFailure
from services.ip_lookup import ProviderChainResolver, history_fields_from_record
from services.persistence import HISTORY_FIELDS, PersistenceGateway
from utils.ip_utils import MAX_LATITUDE, MAX_LONGITUDE, coordinate_in_range, is_valid_ip

_logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)

HISTORY_TEXT_FIELDS = ('city', 'region', 'country', 'isp', 'asn', 'timezone')

# Signed 32-bit, the range of the Integer primary key on Postgres
MAX_RECORD_ID = 2 ** 31 - 1


def setup_logging(loglevel, log_file=None):
    """Setup basic logging, optionally mirrored to a file"""
    logformat = "[%(asctime)s] %(levelname)s:%(name)s:%(message)s"
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=loglevel, format=logformat, datefmt="%Y-%m-%d %H:%M:%S", handlers=handlers
    )


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    db.init_app(app)

    gateway = PersistenceGateway()
    gateway.init_app(app)
    AuthGuard(gateway).init_app(app)
    ProviderChainResolver.from_config(app.config).init_app(app)

    app.register_blueprint(api)
    app.register_error_handler(GeolocationError, handle_geolocation_error)
    app.register_error_handler(Exception, handle_unexpected_error)
    return app


def init_db(app):
    """Create tables and seed the default user"""
    with app.app_context():
        db.create_all()
        _, created = seed_default_user()
        _logger.info(f"Database initialized, default user {'created' if created else 'refreshed'}")


def seed_default_user():
    config = current_app.config
    return _gateway().upsert_user(config['SEED_EMAIL'], hash_password(config['SEED_PASSWORD']))


def handle_geolocation_error(e):
    return jsonify({'message': e.message}), e.status_code


def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return e
    current_app.logger.error(f"Unhandled error: {str(e)}", exc_info=True)
    return jsonify({'message': 'Internal Server Error'}), 500


def _gateway():
    return current_app.extensions['persistence']


def _guard():
    return current_app.extensions['auth_guard']


def _resolver():
    return current_app.extensions['geolocation']


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidInput('Invalid JSON')
    return data


def _coerce_coordinate(value, name, limit):
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidInput(f'{name} must be a number')
    try:
        coordinate = float(value)
    except (TypeError, ValueError, OverflowError):
        raise InvalidInput(f'{name} must be a number')
    if not coordinate_in_range(coordinate, limit):
        raise InvalidInput(f'{name} out of range')
    return coordinate


def _is_record_id(value):
    return isinstance(value, int) and not isinstance(value, bool) and -MAX_RECORD_ID - 1 <= value <= MAX_RECORD_ID


def _history_fields(data):
    """Validate a history POST body and keep only known fields"""
    ip_address = data.get('ipAddress')
    if not isinstance(ip_address, str) or not is_valid_ip(ip_address.strip()):
        raise InvalidInput('Invalid IP address')

    fields = {key: data.get(key) for key in HISTORY_FIELDS}
    fields['ipAddress'] = ip_address.strip()
    for key in HISTORY_TEXT_FIELDS:
        if fields[key] is not None and not isinstance(fields[key], str):
            raise InvalidInput(f'{key} must be a string')
    fields['latitude'] = _coerce_coordinate(fields['latitude'], 'latitude', MAX_LATITUDE)
    fields['longitude'] = _coerce_coordinate(fields['longitude'], 'longitude', MAX_LONGITUDE)
    return fields


@api.route('/health')
def health():
    return jsonify({'status': 'ok'})


@api.route('/api/geolocation', methods=['GET'])
def geolocation():
    """Resolve an IP (or the caller's own address when none is given)"""
    ip = request.args.get('ip', '')
    record = _resolver().resolve(ip)

    # Log activity if user is authenticated
    if (current_app.config.get('RECORD_AUTHENTICATED_LOOKUPS') and current_user.is_authenticated
            and ip and record.provenance != 'synthetic'):
        try:
            _gateway().create_search_history(current_user.id, history_fields_from_record(record))
        except PersistenceFailure as e:
            current_app.logger.error(f"Failed to log search: {e}")

    return jsonify(record.to_dict())


@api.route('/api/login', methods=['POST'])
def login():
    data = _json_body()
    email = data.get('email')
    password = data.get('password')
    if not isinstance(email, str) or not isinstance(password, str) or not email.strip() or not password:
        raise InvalidInput('Email and password are required')

    guard = _guard()
    token = guard.login(email.strip(), password)
    response = jsonify({'message': 'Login successful'})
    return guard.set_auth_cookie(response, token)


@api.route('/api/logout', methods=['POST'])
def logout():
    response = jsonify({'message': 'Logged out successfully'})
    return _guard().clear_auth_cookie(response)


@api.route('/api/seed', methods=['GET'])
def seed():
    """Idempotently create (or refresh) the default user"""
    try:
        _, created = seed_default_user()
    except PersistenceFailure:
        return jsonify({'message': 'Seeding failed'}), 500

    return jsonify({
        'message': 'New User Seeded Successfully' if created else 'User already exists - Credentials Updated',
        'status': 'created' if created else 'exists',
        'credentials': {
            'email': current_app.config['SEED_EMAIL'],
            'password': current_app.config['SEED_PASSWORD'],
        }
    })


@api.route('/api/history', methods=['GET'])
@login_required
def list_history():
    return jsonify(_gateway().list_search_history_by_user(current_user.id))


@api.route('/api/history', methods=['POST'])
@login_required
def create_history():
    fields = _history_fields(_json_body())
    return jsonify(_gateway().create_search_history(current_user.id, fields))


@api.route('/api/history', methods=['DELETE'])
@login_required
def delete_history():
    ids = _json_body().get('ids')
    if not isinstance(ids, list) or not all(_is_record_id(i) for i in ids):
        raise InvalidInput('Invalid IDs provided')

    deleted = _gateway().delete_search_history_by_ids(current_user.id, ids)
    return jsonify({'message': 'Deleted successfully', 'deleted': deleted})


@api.route('/jlabs/login')
def login_page():
    # Page rendering lives in the frontend
    return jsonify({'page': 'login'})


@api.route('/jlabs/home')
def home_page():
    return jsonify({'page': 'home', 'email': getattr(current_user, 'email', None)})


def main():
    """Initialize the database and start the development server"""
    setup_logging(Config.LOG_LEVEL, Config.LOG_FILE)
    app = create_app()
    init_db(app)
    _logger.info("Starting IP geolocation dashboard backend...")
    try:
        app.run(debug=app.config['APP_ENV'] != 'production')
    finally:
        with app.app_context():
            _gateway().shutdown()


if __name__ == '__main__':
    main()
