"""Provider-specific fetch and parse strategies behind a common interface."""
from datetime import datetime
from typing import Dict, List, Optional

from fetcher.feed_fetcher import FeedFetcher
from fetcher.ics_parser import IcsParser
from processor.models import PROVIDER_ICS, FetchResult, ParsedEvent


class FeedProvider:
    """Fetch/parse capability for one provider kind."""

    kind: str = ''

    def fetch(
        self,
        url: str,
        etag: Optional[str],
        last_modified: Optional[str]
    ) -> FetchResult:
        raise NotImplementedError

    def parse(self, body: str, now: Optional[datetime] = None) -> List[ParsedEvent]:
        raise NotImplementedError


class IcsFeedProvider(FeedProvider):
    """Read-only ICS/webcal subscription feeds."""

    kind = PROVIDER_ICS

    def __init__(self, fetcher: FeedFetcher, parser: IcsParser):
        self.fetcher = fetcher
        self.parser = parser

    def fetch(self, url, etag, last_modified):
        return self.fetcher.fetch(url, etag, last_modified)

    def parse(self, body, now=None):
        return self.parser.parse(body, now)


def build_providers(timeout: int = 30) -> Dict[str, FeedProvider]:
    """
    Providers available to the orchestrator, keyed by provider tag.

    OAuth-based providers are not registered here; their sources report an
    unsupported-provider error.
    """
    return {
        PROVIDER_ICS: IcsFeedProvider(FeedFetcher(timeout=timeout), IcsParser()),
    }
