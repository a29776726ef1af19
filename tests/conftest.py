import pytest

import database
from config import Settings

ORDER_ID = "3f2504e0-4f89-11d3-9a0c-0305e82c3301"


class FakeGateway:
    """Answers ``is_paid`` from a script; exceptions in the script are raised."""

    def __init__(self, answers=None, name="Bakong"):
        self.answers = list(answers or [])
        self.name = name
        self.calls = []

    def is_paid(self, reference):
        self.calls.append(reference)
        answer = self.answers.pop(0) if self.answers else False
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        khqr_merchant_id="2819314",
        bakong_api_token="test-token",
        payway_merchant_id="ec000001",
        payway_api_key="test-api-key",
        payway_return_url="https://example.com/return",
        poll_interval=0.01,
        poll_timeout=0.05,
    )


@pytest.fixture
def store(tmp_path):
    # File backed so worker threads each get their own connection
    engine = database.make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    database.init_db(engine)
    yield database.OrderStore(database.make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def order(store):
    return store.create("12.50", order_id=ORDER_ID)


@pytest.fixture
def make_gateway():
    return FakeGateway
