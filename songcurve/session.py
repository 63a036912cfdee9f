import logging
from typing import Optional

from .pricing import PriceAnalytics, PriceAnalyticsService
from .utils import normalize_address

logger = logging.getLogger(__name__)


class AnalyticsSession:
    """Per-consumer view of one observed token.

    Every load carries a request token; a response whose token no longer
    matches the session's latest one (the observed token changed, or a newer
    load started) is discarded instead of applied.
    """

    def __init__(self, service: PriceAnalyticsService, token: Optional[str] = None):
        self.service = service
        self.token: Optional[str] = normalize_address(token) if token else None
        self.result: Optional[PriceAnalytics] = None
        self.request_token = 0
        self.refresh_trigger = 0
        self._applied_trigger = 0
        self.discarded = 0

    def observe(self, token: str) -> None:
        token = normalize_address(token)
        if token == self.token:
            return
        self.token = token
        self.result = None
        self.request_token += 1

    def request_refresh(self) -> None:
        self.refresh_trigger += 1

    async def load(
        self, window_hours: float = 24, bypass_cache: bool = False
    ) -> Optional[PriceAnalytics]:
        if not self.token:
            return None
        self.request_token += 1
        issued = self.request_token
        token = self.token

        trigger = self.refresh_trigger
        if trigger != self._applied_trigger:
            self.service.invalidate(token)
            self._applied_trigger = trigger

        result = await self.service.get_price_analytics(
            token, window_hours, bypass_cache=bypass_cache
        )
        if issued != self.request_token or token != self.token:
            self.discarded += 1
            logger.debug("discarding stale analytics for %s (request %d)", token, issued)
            return None
        self.result = result
        return result
