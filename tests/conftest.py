import pytest

from coordinator import RequestCoordinator
from feed_fakes import FakeFeedAPI


@pytest.fixture
def fake_api():
    return FakeFeedAPI()


@pytest.fixture
def coordinator():
    # No throttle and millisecond backoff so retry paths run instantly
    return RequestCoordinator(min_interval=0, max_retries=3, backoff_base=0.001)
