import os
import tempfile

# keep the import-time upload folder out of the working tree
os.environ.setdefault('MOTOLOG_UPLOADS', os.path.join(tempfile.gettempdir(), 'motolog-test-uploads'))

import pytest

from app import app as flask_app
from auth import sign_up
from init_db import init_db


@pytest.fixture
def app(tmp_path):
    db_path = str(tmp_path / 'test.db')
    flask_app.config.update(
        TESTING=True,
        SECRET_KEY='test',
        DATABASE=db_path,
        UPLOAD_FOLDER=str(tmp_path / 'uploads'),
        STORAGE_PUBLIC_URL='/static/uploads',
        AUTH_BOOTSTRAP_TIMEOUT=5.0,
    )
    init_db(db_path)
    with flask_app.test_request_context():
        yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Register a rider through the normal sign-up path and return their id."""
    def _make(name, **kwargs):
        email = kwargs.pop('email', f'{name.lower()}@example.com')
        user = sign_up(email, 'secret123', name, **kwargs)
        return user['id']
    return _make


@pytest.fixture
def register(client):
    def _register(name, password='secret123'):
        resp = client.post('/api/auth/register', json={
            'email': f'{name.lower()}@example.com', 'password': password, 'name': name,
        })
        assert resp.status_code == 201
        return resp.get_json()['user']['id']
    return _register
