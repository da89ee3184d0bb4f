import os
import sys
import random
import pytest

# Ensure the project root (containing the `ultimatum` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from ultimatum import create_app, db, socketio


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    MIN_PLAYERS = 2
    POLL_INTERVAL_SEC = 0
    POLL_TIMEOUT_SEC = 0
    LONG_POLL_TIMEOUT_SEC = 0
    MATCHMAKING_RETRY_SEC = 0
    MATCHMAKING_MAX_ATTEMPTS = 3
    STORE_RETRY_SEC = 0
    STORE_MAX_ATTEMPTS = 3


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import ultimatum.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


@pytest.fixture()
def rng():
    return random.Random(1234)


@pytest.fixture()
def lobby(flask_app):
    """Build a waiting game with the given player ids and return its id."""
    from ultimatum.services.games.matchmaking import join

    def _lobby(*player_ids):
        game_ids = {join(pid) for pid in player_ids}
        assert len(game_ids) == 1
        return game_ids.pop()

    return _lobby


@pytest.fixture()
def started_game(lobby, rng):
    """Start a game for the given players; returns the game id."""
    from ultimatum.services.games.roles import start_game

    def _started(*player_ids):
        game_id = lobby(*player_ids)
        start_game(game_id, player_ids[0], rng=rng)
        return game_id

    return _started


class FakeClock:
    """Monotonic clock advanced by the sleeps it is paired with."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def fake_clock():
    return FakeClock()
