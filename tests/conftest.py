"""
Pytest configuration and shared fixtures.
"""
from unittest.mock import MagicMock

import pytest

from app import create_app, init_db
from models import db

TEST_EMAIL = 'test@example.com'
TEST_PASSWORD = 'password123'


def build_app(tmp_path, **overrides):
    config = {
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'test.db'}",
        'AUTH_COOKIE_SECURE': False,
        'SEED_EMAIL': TEST_EMAIL,
        'SEED_PASSWORD': TEST_PASSWORD,
    }
    config.update(overrides)
    app = create_app(config)
    init_db(app)
    return app


@pytest.fixture
def app(tmp_path):
    app = build_app(tmp_path)
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def gateway(app):
    """Gateway bound to a pushed app context"""
    with app.app_context():
        yield app.extensions['persistence']


@pytest.fixture
def fake_response():
    """Factory for objects that look enough like requests.Response"""
    def make(status_code=200, payload=None):
        response = MagicMock()
        response.status_code = status_code
        if isinstance(payload, Exception):
            response.json.side_effect = payload
        else:
            response.json.return_value = payload
        return response
    return make


@pytest.fixture
def login(client):
    def do_login(email=TEST_EMAIL, password=TEST_PASSWORD):
        return client.post('/api/login', json={'email': email, 'password': password})
    return do_login


@pytest.fixture
def make_app(tmp_path):
    """Build an app with config overrides on its own database file"""
    apps = []

    def make(**overrides):
        app_dir = tmp_path / f'app{len(apps)}'
        app_dir.mkdir()
        app = build_app(app_dir, **overrides)
        apps.append(app)
        return app

    yield make
    for app in apps:
        with app.app_context():
            db.session.remove()
            db.engine.dispose()
