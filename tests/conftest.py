from typing import Callable, Iterable, Optional

import pytest

from punchboard.feed.archive import FeedArchive
from punchboard.feed.client import FeedClient
from punchboard.reconciliation.engine import ReconciliationEngine
from tests.helpers.feed_documents import FIXED_NOW, FakeFeed


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def make_engine(feed: FakeFeed) -> Callable[..., ReconciliationEngine]:
    def factory(
        controls: Iterable[str] = ("200",),
        archive: Optional[FeedArchive] = None,
    ) -> ReconciliationEngine:
        return ReconciliationEngine(
            FeedClient("timing.local:2009", client=feed.client()),
            controls,
            archive=archive,
            clock=lambda: FIXED_NOW,
        )

    return factory
