"""Reads and writes for users and search history.

Every operation runs on the ORM first. If that raises, the same logical
operation is replayed as hand-written SQL over a throwaway engine that is
created for that one call and disposed afterwards, whatever the outcome.
"""
import logging
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Integer, String, bindparam, create_engine, text

from models import db, utcnow, User, SearchHistory
from .exceptions import PersistenceFailure

_logger = logging.getLogger(__name__)

HISTORY_FIELDS = {
    # api key -> column
    'ipAddress': 'ip_address',
    'city': 'city',
    'region': 'region',
    'country': 'country',
    'isp': 'isp',
    'asn': 'asn',
    'timezone': 'timezone',
    'latitude': 'latitude',
    'longitude': 'longitude',
    'geoInfo': 'geo_info',
}

HISTORY_COLUMNS = ('id, user_id, ip_address, city, region, country, isp, asn, timezone, '
                   'latitude, longitude, geo_info, created_at')

HISTORY_RESULT_TYPES = dict(
    id=Integer, user_id=Integer, ip_address=String, city=String, region=String,
    country=String, isp=String, asn=String, timezone=String, latitude=Float,
    longitude=Float, geo_info=JSON, created_at=DateTime,
)

USER_RESULT_TYPES = dict(id=Integer, email=String, password_hash=String,
                         created_at=DateTime, updated_at=DateTime)


def _isoformat(value):
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value.isoformat()


def _history_row_to_dict(row):
    return {
        'id': row.id,
        'userId': row.user_id,
        'ipAddress': row.ip_address,
        'city': row.city,
        'region': row.region,
        'country': row.country,
        'isp': row.isp,
        'asn': row.asn,
        'timezone': row.timezone,
        'latitude': row.latitude,
        'longitude': row.longitude,
        'geoInfo': row.geo_info,
        'createdAt': _isoformat(row.created_at),
    }


def _user_row_to_dict(row):
    return {
        'id': row.id,
        'email': row.email,
        'passwordHash': row.password_hash,
        'createdAt': _isoformat(row.created_at),
        'updatedAt': _isoformat(row.updated_at),
    }


def _history_columns(fields):
    return {column: fields.get(key) for key, column in HISTORY_FIELDS.items()}


class OrmStrategy:
    """Structured path through the Flask-SQLAlchemy session"""

    def find_user_by_email(self, email):
        user = User.query.filter_by(email=email).first()
        return user.to_dict() if user else None

    def upsert_user(self, email, password_hash):
        user = User.query.filter_by(email=email).first()
        created = user is None
        if created:
            user = User(email=email, password_hash=password_hash)
            db.session.add(user)
        else:
            user.password_hash = password_hash
            user.updated_at = utcnow()
        db.session.commit()
        return user.to_dict(), created

    def create_search_history(self, user_id, fields):
        entry = SearchHistory(user_id=user_id, **_history_columns(fields))
        db.session.add(entry)
        db.session.commit()
        return entry.to_dict()

    def list_search_history_by_user(self, user_id):
        entries = SearchHistory.query.filter_by(user_id=user_id)\
                                     .order_by(SearchHistory.created_at.desc(), SearchHistory.id.desc())\
                                     .all()
        return [entry.to_dict() for entry in entries]

    def delete_search_history_by_ids(self, user_id, ids):
        deleted = SearchHistory.query.filter(
            SearchHistory.user_id == user_id,
            SearchHistory.id.in_(ids)
        ).delete(synchronize_session=False)
        db.session.commit()
        return deleted

    def rollback(self):
        db.session.rollback()


class RawSqlStrategy:
    """Fallback path: parameterized SQL on a dedicated, short-lived engine"""

    def __init__(self, database_url, engine_options=None):
        self.database_url = database_url
        self.engine_options = dict(engine_options or {})

    def _create_engine(self):
        return create_engine(self.database_url, **self.engine_options)

    @contextmanager
    def connection(self):
        engine = self._create_engine()
        try:
            with engine.begin() as conn:
                yield conn
        finally:
            engine.dispose()

    def find_user_by_email(self, email):
        stmt = text(
            'SELECT id, email, password_hash, created_at, updated_at FROM users WHERE email = :email'
        ).columns(**USER_RESULT_TYPES)
        with self.connection() as conn:
            row = conn.execute(stmt, {'email': email}).first()
        return _user_row_to_dict(row) if row else None

    def upsert_user(self, email, password_hash):
        now = utcnow()
        select_stmt = text('SELECT id FROM users WHERE email = :email')
        update_stmt = text(
            'UPDATE users SET password_hash = :password_hash, updated_at = :now WHERE id = :id'
        ).bindparams(bindparam('now', type_=DateTime))
        insert_stmt = text(
            'INSERT INTO users (email, password_hash, created_at, updated_at) '
            'VALUES (:email, :password_hash, :now, :now)'
        ).bindparams(bindparam('now', type_=DateTime))
        find_stmt = text(
            'SELECT id, email, password_hash, created_at, updated_at FROM users WHERE email = :email'
        ).columns(**USER_RESULT_TYPES)

        with self.connection() as conn:
            existing = conn.execute(select_stmt, {'email': email}).first()
            created = existing is None
            if created:
                conn.execute(insert_stmt, {'email': email, 'password_hash': password_hash, 'now': now})
            else:
                conn.execute(update_stmt, {'id': existing.id, 'password_hash': password_hash, 'now': now})
            row = conn.execute(find_stmt, {'email': email}).first()
        return _user_row_to_dict(row), created

    def create_search_history(self, user_id, fields):
        stmt = text(
            'INSERT INTO search_history '
            '(user_id, ip_address, city, region, country, isp, asn, timezone, '
            'latitude, longitude, geo_info, created_at) '
            'VALUES (:user_id, :ip_address, :city, :region, :country, :isp, :asn, :timezone, '
            ':latitude, :longitude, :geo_info, :created_at) '
            f'RETURNING {HISTORY_COLUMNS}'
        ).bindparams(
            bindparam('geo_info', type_=JSON),
            bindparam('created_at', type_=DateTime),
        ).columns(**HISTORY_RESULT_TYPES)

        params = _history_columns(fields)
        params.update(user_id=user_id, created_at=utcnow())
        with self.connection() as conn:
            row = conn.execute(stmt, params).first()
        return _history_row_to_dict(row)

    def list_search_history_by_user(self, user_id):
        stmt = text(
            f'SELECT {HISTORY_COLUMNS} FROM search_history '
            'WHERE user_id = :user_id ORDER BY created_at DESC, id DESC'
        ).columns(**HISTORY_RESULT_TYPES)
        with self.connection() as conn:
            rows = conn.execute(stmt, {'user_id': user_id}).all()
        return [_history_row_to_dict(row) for row in rows]

    def delete_search_history_by_ids(self, user_id, ids):
        stmt = text(
            'DELETE FROM search_history WHERE user_id = :user_id AND id IN :ids'
        ).bindparams(bindparam('ids', expanding=True))
        with self.connection() as conn:
            deleted = conn.execute(stmt, {'user_id': user_id, 'ids': list(ids)}).rowcount
        return deleted

    def rollback(self):
        pass


class PersistenceGateway:
    """Single entry point for data access with an ORM-first, raw-SQL-second policy"""

    def __init__(self, primary=None, fallback=None):
        self.primary = primary
        self.fallback = fallback

    def init_app(self, app):
        if self.primary is None:
            self.primary = OrmStrategy()
        if self.fallback is None:
            self.fallback = RawSqlStrategy(
                app.config['SQLALCHEMY_DATABASE_URI'],
                app.config.get('FALLBACK_ENGINE_OPTIONS'),
            )
        app.extensions['persistence'] = self

    def shutdown(self):
        """Release the process-wide primary pool; call inside an app context"""
        db.engine.dispose()

    def _run(self, operation, *args):
        try:
            return getattr(self.primary, operation)(*args)
        except Exception as primary_error:
            _logger.warning(f"Primary {operation} failed: {primary_error}")
            try:
                self.primary.rollback()
            except Exception as rollback_error:
                _logger.warning(f"Primary rollback after {operation} failed: {rollback_error}")

            _logger.info(f"Fallback {operation} started")
            try:
                result = getattr(self.fallback, operation)(*args)
            except Exception as fallback_error:
                _logger.error(f"Fallback {operation} failed: {fallback_error}")
                raise PersistenceFailure() from fallback_error
            _logger.info(f"Fallback {operation} succeeded")
            return result

    def find_user_by_email(self, email):
        return self._run('find_user_by_email', email)

    def upsert_user(self, email, password_hash):
        return self._run('upsert_user', email, password_hash)

    def create_search_history(self, user_id, fields):
        return self._run('create_search_history', user_id, fields)

    def list_search_history_by_user(self, user_id):
        return self._run('list_search_history_by_user', user_id)

    def delete_search_history_by_ids(self, user_id, ids):
        ids = list(ids)
        if not ids:
            return 0
        return self._run('delete_search_history_by_ids', user_id, ids)
