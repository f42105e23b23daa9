from uuid import uuid4

import pytest

from budget_tracker.auth_utils import issue_session_token
from budget_tracker.config import settings


def make_headers(user_id: str) -> dict[str, str]:
    token = issue_session_token(user_id, settings.identity_provider_secret)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_id() -> str:
    return f"user_{uuid4().hex}"


@pytest.fixture
def headers(user_id: str) -> dict[str, str]:
    return make_headers(user_id)


@pytest.fixture
def other_headers() -> dict[str, str]:
    return make_headers(f"user_{uuid4().hex}")
