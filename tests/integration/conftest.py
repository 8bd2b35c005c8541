from __future__ import annotations

import os
import uuid
from collections.abc import Iterator

import pytest

from assessment_api.app.storage.postgres import PostgresTaskStorage


@pytest.fixture
def postgres_storage() -> Iterator[PostgresTaskStorage]:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and ASSESSMENT_API_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("ASSESSMENT_API_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("ASSESSMENT_API_DATABASE_URL is required for integration tests.")

    storage = PostgresTaskStorage(database_url)
    storage.migrate()
    yield storage


@pytest.fixture
def unique_ref() -> str:
    return f"it-{uuid.uuid4()}"
