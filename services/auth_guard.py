import logging
import time

from flask import current_app, g, redirect, request
from flask_login import LoginManager, UserMixin
from itsdangerous import BadSignature, URLSafeTimedSerializer

from models.user import verify_password
from .exceptions import Unauthorized

_logger = logging.getLogger(__name__)

TOKEN_SALT = 'auth-token'
DEFAULT_TTL = 60 * 60 * 24


class SessionUser(UserMixin):
    """Principal rebuilt from a verified session token, no database hit"""

    def __init__(self, user_id, email):
        self.id = user_id
        self.email = email

    def __repr__(self):
        return f'<SessionUser {self.email}>'


class AuthGuard:
    """Issues and verifies signed session tokens and gates page routes"""

    def __init__(self, gateway=None):
        self.gateway = gateway
        self.login_manager = LoginManager()

    def init_app(self, app, gateway=None):
        if gateway is not None:
            self.gateway = gateway

        app.config.setdefault('AUTH_COOKIE_NAME', 'auth-token')
        app.config.setdefault('AUTH_TOKEN_TTL', DEFAULT_TTL)
        app.config.setdefault('AUTH_COOKIE_SECURE', False)
        app.config.setdefault('AUTH_PROTECTED_PREFIX', '/jlabs/home')
        app.config.setdefault('AUTH_LOGIN_PATH', '/jlabs/login')
        app.config.setdefault('AUTH_HOME_PATH', '/jlabs/home')

        self.login_manager.init_app(app)
        self.login_manager.request_loader(self._load_request_user)
        self.login_manager.unauthorized_handler(self._unauthorized)

        app.before_request(self.guard_route)
        app.after_request(self._clear_stale_cookie)
        app.extensions['auth_guard'] = self

    # Tokens

    def _serializer(self):
        return URLSafeTimedSerializer(current_app.config['SECRET_KEY'], salt=TOKEN_SALT)

    def issue_token(self, user_id, email, now=None):
        issued_at = int(now if now is not None else time.time())
        payload = {
            'userId': user_id,
            'email': email,
            'iat': issued_at,
            'exp': issued_at + current_app.config['AUTH_TOKEN_TTL'],
        }
        return self._serializer().dumps(payload)

    def verify_token(self, token):
        """Return the token claims, or None if the signature or expiry is bad"""
        if not token:
            return None
        try:
            claims = self._serializer().loads(token, max_age=current_app.config['AUTH_TOKEN_TTL'])
        except BadSignature:
            return None

        if not isinstance(claims, dict) or 'userId' not in claims:
            return None
        if claims.get('exp', 0) <= time.time():
            return None
        return claims

    # Cookies

    def set_auth_cookie(self, response, token):
        config = current_app.config
        response.set_cookie(
            config['AUTH_COOKIE_NAME'],
            token,
            max_age=config['AUTH_TOKEN_TTL'],
            path='/',
            httponly=True,
            secure=config['AUTH_COOKIE_SECURE'],
            samesite='Lax',
        )
        return response

    def clear_auth_cookie(self, response):
        response.delete_cookie(
            current_app.config['AUTH_COOKIE_NAME'],
            path='/',
            secure=current_app.config['AUTH_COOKIE_SECURE'],
            samesite='Lax',
        )
        return response

    # Login

    def authenticate(self, email, password):
        """Look up the user and check the password.

        Unknown email and wrong password raise the same Unauthorized so the
        caller cannot tell which one failed.
        """
        user = self.gateway.find_user_by_email(email)
        if user is None or not verify_password(user['passwordHash'], password):
            _logger.info(f"Login rejected for {email}")
            raise Unauthorized('Invalid credentials')

        _logger.info(f"Login succeeded for {email}")
        return user

    def login(self, email, password):
        """Authenticate and return a freshly issued session token"""
        user = self.authenticate(email, password)
        return self.issue_token(user['id'], user['email'])

    # Request hooks

    def _request_claims(self):
        token = request.cookies.get(current_app.config['AUTH_COOKIE_NAME'])
        return token, self.verify_token(token)

    def _load_request_user(self, req):
        _, claims = self._request_claims()
        if claims is None:
            return None
        return SessionUser(claims['userId'], claims.get('email'))

    def _unauthorized(self):
        raise Unauthorized()

    def guard_route(self):
        """before_request hook for the protected prefix and the login page"""
        config = current_app.config
        path = request.path
        login_path = config['AUTH_LOGIN_PATH']

        if path.startswith(config['AUTH_PROTECTED_PREFIX']):
            token, claims = self._request_claims()
            if not token:
                return redirect(login_path)
            if claims is None:
                return self.clear_auth_cookie(redirect(login_path))
            return None

        if path == login_path:
            token, claims = self._request_claims()
            if not token:
                return None
            if claims is not None:
                return redirect(config['AUTH_HOME_PATH'])
            # Let the login page render but drop the stale cookie
            g.clear_auth_cookie = True

        return None

    def _clear_stale_cookie(self, response):
        if g.pop('clear_auth_cookie', False):
            self.clear_auth_cookie(response)
        return response
