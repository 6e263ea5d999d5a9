import pytest

from tests.fakes import FakeRepository


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()
