"""
Pytest configuration and shared fixtures for the governance workflow tests
"""
import pytest
import os
import sys
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment before importing app; the engine is built at import
os.environ['FLASK_ENV'] = 'testing'
os.environ['TESTING'] = 'true'
_db_fd, _db_path = tempfile.mkstemp(suffix='.db')
os.environ['DATABASE_URL'] = f'sqlite:///{_db_path}'


@pytest.fixture(scope='session')
def app():
    """Create and configure a test Flask application instance"""
    from server import app as flask_app
    from models import db
    from rate_limiter import limiter

    flask_app.config.update({
        'TESTING': True,
        'SECRET_KEY': 'test-secret-key',
    })

    # Disable rate limiting for tests (must be done after init_limiter ran)
    limiter.enabled = False

    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()

    os.close(_db_fd)
    os.unlink(_db_path)


@pytest.fixture(autouse=True)
def _clean_db(app):
    """Clean up data between tests to avoid UNIQUE constraint violations."""
    from models import db
    yield
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    db.session.expunge_all()


@pytest.fixture(scope='function')
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


def _make_user(email, is_admin=False):
    from models import User, db

    user = User(email=email, created_at=datetime.utcnow(), is_admin=is_admin)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def user(app):
    """The operator who owns assets and proposes actions"""
    return _make_user('owner@example.com')


@pytest.fixture
def other_user(app):
    """A second operator, for ownership isolation tests"""
    return _make_user('other@example.com')


@pytest.fixture
def alice(app):
    return _make_user('alice@example.com')


@pytest.fixture
def bob(app):
    return _make_user('bob@example.com')


@pytest.fixture
def asset(app, user):
    """A Google Workspace file owned by ``user``"""
    from models import Asset, db

    a = Asset(
        owner_user_id=user.id,
        platform='google_workspace',
        external_id='file-42',
        name='Quarterly numbers.xlsx',
        owner_email=user.email,
    )
    db.session.add(a)
    db.session.commit()
    return a


@pytest.fixture
def credential(app, user):
    """Stored Google credentials for ``user``"""
    from models import PlatformCredential, db

    cred = PlatformCredential(
        owner_user_id=user.id,
        platform='google_workspace',
        credentials={'access_token': 'ya29.test', 'refresh_token': 'rt-test'},
    )
    db.session.add(cred)
    db.session.commit()
    return cred


def _login(client, user):
    with client.session_transaction() as sess:
        sess['user_id'] = user.id
        sess['user_email'] = user.email
    return client


@pytest.fixture
def login():
    """Put a user into a test client's session: login(client, user)"""
    return _login


@pytest.fixture
def authenticated_client(client, user, app):
    """Create a test client with an authenticated session"""
    return _login(client, user)


# ---------------------------------------------------------------------------
# Platform fakes
# ---------------------------------------------------------------------------

class FakePlatform:
    """Records every remediation call; optionally slow or failing."""

    def __init__(self, fail_with=None, delay=0, returns=None):
        self.fail_with = fail_with
        self.delay = delay
        self.returns = returns
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, name, *args):
        with self._lock:
            self.calls.append((name,) + args)
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return self.returns

    def delete(self, asset_id):
        return self._record('delete', asset_id)

    def change_visibility(self, asset_id, visibility):
        return self._record('change_visibility', asset_id, visibility)

    def remove_permission(self, asset_id, permission_id):
        return self._record('remove_permission', asset_id, permission_id)

    def transfer_ownership(self, asset_id, new_owner_email):
        return self._record('transfer_ownership', asset_id, new_owner_email)


@pytest.fixture
def fake_platform():
    return FakePlatform()


@pytest.fixture
def platform_factory(fake_platform):
    """Factory handing out ``fake_platform``; remembers what it was asked for"""
    requests = []

    def factory(platform, credentials, timeout=None):
        if platform != 'google_workspace':
            raise ValueError(f'Unsupported platform {platform!r}')
        requests.append((platform, credentials, timeout))
        return fake_platform

    factory.requests = requests
    return factory


@pytest.fixture
def engine(app, platform_factory):
    from core.workflow.engine import WorkflowEngine
    return WorkflowEngine(platform_factory=platform_factory, platform_timeout=5)


@pytest.fixture
def routed_platform(app, platform_factory):
    """Make the HTTP layer use the fake platform for this test"""
    app.config['WORKFLOW_PLATFORM_FACTORY'] = platform_factory
    yield platform_factory
    app.config.pop('WORKFLOW_PLATFORM_FACTORY', None)
