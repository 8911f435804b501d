import logging
from typing import Optional

from locu.buckets import BucketService
from locu.clock import Clock, utc_now
from locu.config import Settings, settings as default_settings
from locu.connections import ConnectionService
from locu.estimates import EstimateService
from locu.identity import IdentityResolver
from locu.importer import ImportEngine, ImportRuleService
from locu.mirror import MirrorSync
from locu.outbox import Outbox
from locu.providers import ProviderRegistry, TodoistProvider
from locu.remote import RemoteStore, RestRemoteStore
from locu.store import LocalStore
from locu.app_state import get_or_create_app_state, stored_account_id
from locu.tasks import TaskService
from locu.timer import TimerEngine

logger = logging.getLogger(__name__)


def build_remote(cfg: Settings) -> Optional[RemoteStore]:
    if not cfg.REMOTE_API_BASE:
        return None
    return RestRemoteStore(cfg.REMOTE_API_BASE, api_key=cfg.REMOTE_API_KEY, timeout=cfg.REMOTE_TIMEOUT_SECONDS)


def build_providers(cfg: Settings) -> ProviderRegistry:
    return ProviderRegistry({
        "todoist": TodoistProvider(cfg.TODOIST_API_BASE, timeout=cfg.PROVIDER_TIMEOUT_SECONDS),
    })


class Runtime:
    """Everything one device needs, wired from settings.

    Nothing here is global; the API and the worker each build their own.
    """

    def __init__(
        self,
        cfg: Optional[Settings] = None,
        remote: Optional[RemoteStore] = None,
        providers: Optional[ProviderRegistry] = None,
        clock: Clock = utc_now,
        run_ticker: bool = True,
    ):
        self.settings = cfg or default_settings
        self.clock = clock
        self.store = LocalStore(self.settings.DATABASE_URL)
        self.identity = IdentityResolver(self.settings.ACCOUNT_ID)
        self.remote = remote if remote is not None else build_remote(self.settings)
        self.providers = providers if providers is not None else build_providers(self.settings)

        self.outbox = Outbox(
            self.store,
            self.identity,
            self.remote,
            clock=clock,
            max_backoff_seconds=self.settings.OUTBOX_MAX_BACKOFF_SECONDS,
            batch_size=self.settings.OUTBOX_BATCH_SIZE,
        )
        self.buckets = BucketService(self.store, self.outbox, self.identity, clock=clock)
        self.tasks = TaskService(self.store, self.outbox, self.identity, providers=self.providers, clock=clock)
        self.importer = ImportEngine(self.store, self.outbox, self.identity, clock=clock)
        self.import_rules = ImportRuleService(self.store, self.outbox, self.identity, clock=clock)
        self.connections = ConnectionService(self.store, self.importer, self.providers, clock=clock)
        self.estimates = EstimateService(
            self.store,
            self.identity,
            sample_window=self.settings.ESTIMATE_SAMPLE_WINDOW,
            min_samples=self.settings.ESTIMATE_MIN_SAMPLES,
        )
        self.timer = TimerEngine(
            self.store,
            self.outbox,
            self.identity,
            clock=clock,
            tick_seconds=self.settings.TIMER_TICK_SECONDS,
            checkpoint_every=self.settings.TIMER_CHECKPOINT_EVERY,
            default_fixed_minutes=self.settings.TIMER_DEFAULT_FIXED_MINUTES,
            stale_after_hours=self.settings.STALE_SESSION_HOURS,
            timezone_name=self.settings.APP_TIMEZONE,
            run_ticker=run_ticker,
        )
        self.mirror = MirrorSync(
            self.store,
            self.outbox,
            self.identity,
            self.remote,
            timer=self.timer,
            clock=clock,
            timezone_name=self.settings.APP_TIMEZONE,
        )

    async def load_identity(self) -> None:
        """Follow the account this device last signed in with, else the configured one.

        The API and the worker share the device row, so a sign-in made through
        one process reaches the other on its next call.
        """
        async with self.store.transaction() as session:
            account_id = await stored_account_id(session)
        account_id = account_id or (self.settings.ACCOUNT_ID or "").strip() or None
        if account_id == self.identity.account_id:
            return
        if account_id:
            self.identity.sign_in(account_id)
        else:
            self.identity.sign_out()

    async def open(self) -> None:
        await self.store.open()
        async with self.store.transaction() as session:
            state = await get_or_create_app_state(session)
            device_id = state.device_id
        await self.load_identity()
        await self.buckets.ensure_default()
        logger.info(f"Local store ready (device {device_id}, owner {self.identity.owner_id})")

    async def close(self) -> None:
        if self.store.is_ready:
            await self.timer.shutdown()
        await self.store.close()
