"""
Command line entry point

    shielded-transfer balances
    shielded-transfer transfer --token 0x... --amount 10000000000000000
    shielded-transfer poi

The engine is not part of this package; `engine.factory` in the config
names a callable ("package.module:function") returning (engine, provider).
"""

import argparse
import asyncio
import importlib
import inspect
import sys
from typing import List, Optional, Tuple

from loguru import logger

from .aggregator import BalanceAggregator
from .config import Credentials, Settings, load_credentials, load_settings
from .errors import ConfigError, ShieldedTransferError
from .history import RunHistoryDB
from .models import BalanceSnapshot, TransferRecipient, WorkflowRun
from .reconciliation import ReconciliationManager, ReconciliationResult
from .session import EngineSession
from .transfer import TransferRequest, TransferWorkflow

WETH_ADDRESS = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"


def setup_logging(settings: Settings):
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {name}:{function} - {message}",
    )
    if settings.log_file:
        logger.add(settings.log_file, level="DEBUG", rotation=settings.log_rotation)


async def load_engine(factory_path: Optional[str], settings: Settings, credentials: Credentials) -> Tuple:
    """
    Import and call the configured engine factory

    Returns:
        (engine, provider)
    """
    if not factory_path or ':' not in factory_path:
        raise ConfigError("engine.factory must be set to 'package.module:callable'")
    module_name, attr = factory_path.split(':', 1)
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load engine factory {factory_path}: {e}") from e
    created = factory(settings, credentials)
    if inspect.isawaitable(created):
        created = await created
    return created


def print_snapshot(snapshot: BalanceSnapshot):
    if not snapshot:
        print("\nNo positive balances found.")
        return
    for bucket, tokens in snapshot.items():
        print(f"\n[{bucket.value}]")
        for token in tokens:
            print(f"  {token.token_address}: {token.amount} (wei)")


def print_run(run: WorkflowRun):
    print("\n" + "=" * 60)
    print(f"Transfer run {run.run_id}")
    print("=" * 60)
    for record in run.stages:
        duration = f"{record.duration_seconds:.2f}s" if record.duration_seconds is not None else "-"
        line = f"  {record.name:22s} {record.state.value:10s} {duration}"
        if record.error_kind:
            line += f"  [{record.error_kind.value}] {record.detail}"
        print(line)
    print(f"\nStatus: {run.status.value}")
    if run.output.get('tx_id'):
        print(f"Transaction: {run.output['tx_id']}")
    if run.outcome_unknown:
        print("Confirmation: UNKNOWN - the transaction may still confirm, do not resend blindly")
    elif not run.succeeded:
        print(f"Failed stage: {run.failed_stage} ({run.error_kind.value}): {run.detail}")
        if run.escalate:
            print("Engine state is no longer trustworthy; restart before retrying")


def print_reconciliation(result: ReconciliationResult):
    if result.clean:
        print("\nPOI status refreshed and proof generation triggered.")
        return
    print(f"\nPOI update finished with {len(result.warnings)} warning(s):")
    for warning in result.warnings:
        print(f"  ⚠ {warning}")


def build_request(recipients: List[TransferRecipient]) -> TransferRequest:
    """
    Validate recipients into a TransferRequest

    Raises:
        ConfigError: empty recipient list, missing address or non-positive amount
    """
    for recipient in recipients:
        if not recipient.recipient_address:
            raise ConfigError("Recipient address missing (pass --to or set TARGET_0ZK_ADDRESS)")
    try:
        return TransferRequest(recipients=recipients)
    except ValueError as e:
        raise ConfigError(str(e)) from e


async def run_balances(
    session: EngineSession,
    settings: Settings,
    quiescence: Optional[float] = None,
    ceiling: Optional[float] = None,
) -> int:
    print(f"0zk Address: {session.wallet.address}")
    print("Fetching balances... the first scan can take a while")
    aggregator = BalanceAggregator(session, settings.aggregation)
    try:
        snapshot = await aggregator.aggregate(session.wallet_id, session.chain_id, quiescence, ceiling)
    except ShieldedTransferError as e:
        logger.error(f"❌ Balance aggregation failed: {e}")
        return 1
    print_snapshot(snapshot)
    return 0


async def run_reconciliation(session: EngineSession) -> ReconciliationResult:
    try:
        await session.refresh_balances()
    except Exception as e:
        # Reconciliation is best effort; a stale balance view is not fatal here
        logger.warning(f"⚠ Balance refresh before POI update failed: {e}")
    result = await ReconciliationManager(session).run()
    print_reconciliation(result)
    return result


async def run_transfer(
    session: EngineSession,
    settings: Settings,
    recipients: List[TransferRecipient],
    history: Optional[RunHistoryDB] = None,
) -> int:
    """
    Transfer, then reconcile regardless of the transfer outcome

    Returns:
        Process exit code reflecting the transfer run only
    """
    # Nothing is attempted (and nothing reconciled) for an invalid request
    request = build_request(recipients)

    print(f"From: {session.wallet.address}")
    for recipient in recipients:
        print(f"To:   {recipient.recipient_address} ({recipient.amount} of {recipient.token_address})")

    workflow = TransferWorkflow(session, settings.transfer)
    run = None
    try:
        run = await workflow.run(request)
        print_run(run)
    finally:
        reconciliation = await run_reconciliation(session)
        if history is not None and run is not None:
            history.record_run(run, workflow="transfer")
            history.record_reconciliation(run.run_id, reconciliation)

    return 0 if run.succeeded else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shielded-transfer", description="Shielded balance and transfer tool")
    parser.add_argument("--config", default="shielded_config.yaml", help="YAML config path")
    parser.add_argument("--env-file", default=None, help=".env file with wallet secrets")
    sub = parser.add_subparsers(dest="command", required=True)

    balances = sub.add_parser("balances", help="Aggregate and print shielded balances")
    balances.add_argument("--quiescence", type=float, default=None, help="Seconds of silence before finalizing")
    balances.add_argument("--ceiling", type=float, default=None, help="Overall timeout in seconds")

    transfer = sub.add_parser("transfer", help="Send a private transfer, then refresh POI status")
    transfer.add_argument("--token", default=WETH_ADDRESS, help="ERC20 token address")
    transfer.add_argument("--amount", type=int, required=True, help="Amount in base units (wei)")
    transfer.add_argument("--to", default=None, help="0zk recipient (default: TARGET_0ZK_ADDRESS)")

    sub.add_parser("poi", help="Refresh POI status and trigger proof generation")
    return parser


async def _main(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    setup_logging(settings)
    credentials = load_credentials(
        require_target=args.command == "transfer" and not getattr(args, "to", None),
        env_file=args.env_file,
    )
    recipients: List[TransferRecipient] = []
    if args.command == "transfer":
        recipients = [TransferRecipient(
            token_address=args.token,
            amount=args.amount,
            recipient_address=args.to or credentials.target_address,
        )]
        # Validated before the engine starts
        build_request(recipients)

    engine, provider = await load_engine(settings.engine.factory, settings, credentials)

    async with EngineSession(
        engine,
        provider,
        settings.engine,
        credentials,
        queue_size=settings.aggregation.queue_size,
    ) as session:
        if args.command == "balances":
            return await run_balances(session, settings, args.quiescence, args.ceiling)

        if args.command == "poi":
            await run_reconciliation(session)
            return 0

        history = RunHistoryDB(settings.history_db_path)
        try:
            return await run_transfer(session, settings, recipients, history)
        finally:
            history.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_main(args))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except ShieldedTransferError as e:
        logger.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
