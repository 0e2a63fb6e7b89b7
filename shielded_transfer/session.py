"""
Engine Session

Explicit handle for the engine lifecycle. Every component receives the
session instead of reaching for module-level engine state.
"""

import asyncio
from typing import List, Optional, Set

from loguru import logger

from .artifact_store import FileArtifactStore
from .config import Credentials, EngineSettings
from .errors import EngineError
from .event_bus import EventBusAdapter
from .interfaces import ArtifactStore, ChainProvider, ShieldedEngine
from .models import WalletInfo


class EngineSession:
    """
    Started engine + chain provider + loaded wallet

    Usage:
        async with EngineSession(engine, provider, settings, credentials) as session:
            ...
    """

    def __init__(
        self,
        engine: ShieldedEngine,
        provider: ChainProvider,
        settings: EngineSettings,
        credentials: Credentials,
        queue_size: int = 1000,
        artifact_store: Optional[ArtifactStore] = None,
    ):
        self.engine = engine
        self.provider = provider
        self.settings = settings
        self.credentials = credentials
        self.artifact_store = artifact_store or FileArtifactStore(settings.artifacts_dir)
        self.bus = EventBusAdapter(engine, queue_size=queue_size)
        self.wallet: Optional[WalletInfo] = None
        self._started = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def network_name(self) -> str:
        return self.settings.network_name

    @property
    def chain_id(self) -> int:
        return self.settings.chain_id

    @property
    def txid_version(self) -> str:
        return self.settings.txid_version

    @property
    def wallet_id(self) -> str:
        if self.wallet is None:
            raise EngineError("Session has no wallet loaded; call start() first")
        return self.wallet.id

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> WalletInfo:
        """
        Start the engine, load the provider and the wallet

        Returns:
            Loaded wallet info

        Raises:
            EngineError: if any engine call fails
        """
        if self._started:
            return self.wallet

        try:
            logger.info("Starting engine...")
            await self.engine.start(
                self.settings.wallet_source,
                self.settings.db_path,
                self.artifact_store,
                self.settings.poi_node_urls,
            )
            self._started = True
            self.engine.set_loggers(
                lambda msg: logger.info(f"[Engine]: {msg}"),
                lambda err: logger.error(f"[Engine Error]: {err}"),
            )

            logger.info(f"Loading provider for {self.network_name} (chain {self.chain_id})...")
            await self.engine.load_provider(self.chain_id, self.credentials.rpc_url, self.network_name)

            logger.info("Loading wallet...")
            wallet = await self.engine.create_wallet(
                self.credentials.encryption_key,
                self.credentials.mnemonic,
                self.credentials.creation_block,
            )
        except Exception as e:
            if self._started:
                await self._stop_after_failed_start()
            if isinstance(e, EngineError):
                raise
            raise EngineError(f"Engine start failed: {e}") from e

        if isinstance(wallet, dict):
            wallet = WalletInfo(id=wallet['id'], address=wallet.get('railgunAddress') or wallet.get('address'))
        self.wallet = wallet
        logger.info(f"✓ Wallet loaded: {wallet.address}")
        return wallet

    async def _stop_after_failed_start(self):
        logger.warning("⚠ Engine started but session setup failed, stopping engine")
        try:
            await graceful_shutdown(self, timeout=self.settings.shutdown_timeout)
        except Exception as stop_error:
            # The start failure is what the caller needs to see
            logger.error(f"✗ Engine stop after failed start also failed: {stop_error}")

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """Register a background task owned by this session (cancelled on forced shutdown)"""
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def pending_tasks(self) -> List[asyncio.Task]:
        return [t for t in self._tasks if not t.done()]

    async def refresh_balances(self, wallet_ids: Optional[List[str]] = None):
        await self.engine.refresh_balances(self.chain_id, wallet_ids or [self.wallet_id])

    async def stop(self):
        """Release event callbacks and stop the engine"""
        self.bus.unsubscribe_all()
        if not self._started:
            return
        self._started = False
        await self.engine.stop()
        logger.info("✓ Engine stopped")

    async def __aenter__(self) -> "EngineSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await graceful_shutdown(self, timeout=self.settings.shutdown_timeout)


async def graceful_shutdown(session: EngineSession, timeout: float = 15.0):
    """
    Stop the session, cancelling its leftover tasks if the engine hangs

    Only tasks registered with session.track() are cancelled; the caller
    awaiting this coroutine is never touched.

    Args:
        session: Session to stop
        timeout: Maximum time to wait for the engine to stop (seconds)
    """
    try:
        logger.info("Starting graceful shutdown...")
        await asyncio.wait_for(session.stop(), timeout=timeout)
        logger.info("✓ Graceful shutdown complete")
    except asyncio.TimeoutError:
        logger.warning(f"Shutdown timeout after {timeout}s, forcing cleanup")
        pending = session.pending_tasks()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending, timeout=5.0)
