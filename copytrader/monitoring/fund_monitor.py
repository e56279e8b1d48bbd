"""
Follower wallet monitoring.

Polls each follower's futures wallet and maintains the derived `low_fund`
flag (wallet balance below the follower's allocated fund). The orchestrator's
pre-flight guard reads that flag; the margin check reads the stored balance.
"""
import asyncio
from decimal import Decimal
from typing import Dict

from copytrader.domain.models import Follower
from copytrader.exceptions import CopyTradingError
from copytrader.monitoring.logger import get_logger
from copytrader.utils.credentials import decrypt_follower_credentials

logger = get_logger(__name__)


class FundMonitor:
    def __init__(self, follower_store, venue, decryptor):
        self.followers = follower_store
        self.venue = venue
        self.decryptor = decryptor

    async def refresh_follower(self, follower: Follower) -> Decimal:
        credentials = decrypt_follower_credentials(self.decryptor, follower)
        balance = await self.venue.get_wallet_balance(credentials)
        low_fund = balance < follower.fund
        await self.followers.update_wallet_balance(follower.id, balance, low_fund)
        if low_fund != follower.low_fund:
            logger.warning(
                "FOLLOWER_LOW_FUND_CHANGED",
                follower_id=follower.id,
                low_fund=low_fund,
                balance=str(balance),
                fund=str(follower.fund),
            )
        return balance

    async def refresh_all(self) -> Dict[str, int]:
        summary = {"checked": 0, "low_fund": 0, "errors": 0}
        for follower in await self.followers.list_active_followers():
            summary["checked"] += 1
            try:
                balance = await self.refresh_follower(follower)
            except CopyTradingError as e:
                summary["errors"] += 1
                logger.warning("FUND_CHECK_FAILED", follower_id=follower.id, error=str(e))
                continue
            except Exception as e:
                summary["errors"] += 1
                logger.error("FUND_CHECK_FAILED", follower_id=follower.id, error=str(e), exc_info=True)
                continue
            if balance < follower.fund:
                summary["low_fund"] += 1
        logger.info("FUND_CHECK_COMPLETE", **summary)
        return summary

    async def run_periodic(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.refresh_all()
            except Exception as e:
                logger.error("FUND_CHECK_SWEEP_FAILED", error=str(e), exc_info=True)
            await asyncio.sleep(interval_seconds)
