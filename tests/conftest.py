from __future__ import annotations

import json

import pytest

from ewaste_repairs import create_app


class FakeConnection:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[str] = []
        self.fail = fail

    def send(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("socket is gone")
        self.sent.append(data)

    @property
    def events(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]


@pytest.fixture
def app(tmp_path):
    return create_app({"TESTING": True, "DATA_DIR": str(tmp_path)})


@pytest.fixture
def store(app):
    return app.extensions["store"]


@pytest.fixture
def registry(app):
    return app.extensions["registry"]


@pytest.fixture
def engine(app):
    return app.extensions["engine"]


@pytest.fixture
def customer(store):
    return store.get_user("customer")


@pytest.fixture
def technician(store):
    return store.get_user("technician")


@pytest.fixture
def connect(registry):
    def _connect(user, fail: bool = False) -> FakeConnection:
        connection = FakeConnection(fail=fail)
        registry.register(user.id, connection, user.role)
        return connection

    return _connect
