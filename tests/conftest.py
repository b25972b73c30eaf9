import pytest
import structlog


@pytest.fixture(autouse=True)
def _reset_structlog():
    # cli.main() configures structlog globally, bound to that test's stderr
    yield
    structlog.reset_defaults()
