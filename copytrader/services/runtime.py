"""
Startup wiring: one place that turns a Config into live components.

The order executor strategy (live vs dry run) is chosen here, once.
"""
from dataclasses import dataclass
from typing import Optional

from copytrader.config.config import Config
from copytrader.execution.executor import OrderExecutor, build_order_executor
from copytrader.execution.instrument_meta import InstrumentMetaCache
from copytrader.execution.rate_limiter import CallIntervalGate
from copytrader.execution.state_machine import MirrorStateMachine
from copytrader.monitoring.fund_monitor import FundMonitor
from copytrader.reconciliation.pnl_matcher import PnLReconciler
from copytrader.services.copy_trading_service import CopyTradingService
from copytrader.storage.db import Database, init_db
from copytrader.storage.repository import SqlFollowerStore, SqlMirrorTradeStore
from copytrader.utils.credentials import CredentialCipher
from copytrader.venue.client import VenueRestClient


@dataclass
class Runtime:
    config: Config
    db: Database
    followers: SqlFollowerStore
    mirrors: SqlMirrorTradeStore
    venue: VenueRestClient
    cipher: CredentialCipher
    executor: OrderExecutor
    service: CopyTradingService
    reconciler: PnLReconciler
    fund_monitor: FundMonitor


def build_runtime(config: Config, db: Optional[Database] = None) -> Runtime:
    if db is None:
        if not config.data.database_url:
            raise ValueError("DATABASE_URL is not set")
        db = init_db(config.data.database_url)

    followers = SqlFollowerStore(db)
    mirrors = SqlMirrorTradeStore(db)
    venue = VenueRestClient(
        base_url=config.venue.base_url,
        order_timeout_seconds=config.venue.order_timeout_seconds,
        request_timeout_seconds=config.venue.request_timeout_seconds,
    )
    cipher = CredentialCipher.from_env(config.security.encryption_key_env, config.security.encryption_salt_env)
    gate = CallIntervalGate(config.execution.min_api_interval_ms)
    executor = build_order_executor(config.execution, venue=venue, gate=gate)
    meta_cache = InstrumentMetaCache(venue, ttl_seconds=config.venue.instrument_cache_ttl_seconds)
    state = MirrorStateMachine(mirrors, followers, margin_buffer=config.execution.margin_buffer)

    service = CopyTradingService(
        config,
        followers,
        mirrors,
        executor,
        meta_cache,
        cipher,
        state_machine=state,
    )
    reconciler = PnLReconciler(
        mirrors, followers, venue, cipher, batch_limit=config.reconciliation.batch_limit
    )
    return Runtime(
        config=config,
        db=db,
        followers=followers,
        mirrors=mirrors,
        venue=venue,
        cipher=cipher,
        executor=executor,
        service=service,
        reconciler=reconciler,
        fund_monitor=FundMonitor(followers, venue, cipher),
    )
