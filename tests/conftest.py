import itertools
from datetime import datetime

import pytest

from app import create_app
from config import TestConfig
import library
from models import db
import rules

NOW = datetime(2024, 1, 1, 10, 0)
PASSWORD = 'secret123'


@pytest.fixture
def app(tmp_path):
    class Config(TestConfig):
        UPLOAD_FOLDER = str(tmp_path / 'uploads')

    app = create_app(Config)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def _make(role=rules.BORROWER, **profile):
        n = next(counter)
        return library.register_user(
            profile.pop('username', '%s%d' % (role, n)),
            profile.pop('email', '%s%d@example.com' % (role, n)),
            profile.pop('password', PASSWORD),
            role=role, now=profile.pop('now', NOW), **profile)
    return _make


@pytest.fixture
def make_book(app):
    counter = itertools.count(1)

    def _make(copies=1, **data):
        n = next(counter)
        data.setdefault('title', 'Book %d' % n)
        data.setdefault('author', 'Author %d' % n)
        data.setdefault('isbn', '978000000%04d' % n)
        data['total_copies'] = copies
        return library.create_book(data, now=NOW)
    return _make


@pytest.fixture
def borrower(make_user):
    return make_user(rules.BORROWER)


@pytest.fixture
def librarian(make_user):
    return make_user(rules.LIBRARIAN)


@pytest.fixture
def admin(make_user):
    return make_user(rules.ADMINISTRATOR)


def login(client, user, password=PASSWORD):
    response = client.post('/api/auth/login', json={'username': user.username, 'password': password})
    assert response.status_code == 200
    return response
