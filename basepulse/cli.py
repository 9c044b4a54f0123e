"""
Command line interface for the BasePulse indexer.
"""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from alembic import command
from alembic.config import Config

from basepulse.core.config import settings
from basepulse.core.database import (
    DatabaseManager,
    close_database,
    get_async_session,
    init_database,
)
from basepulse.core.exceptions import BasePulseException, ChainClientError, ConfigurationError
from basepulse.core.logging import get_logger, setup_logging
from basepulse.indexer.core.sync_orchestrator import SyncOrchestrator
from basepulse.indexer.main import main as run_indexer
from basepulse.services.chain_client import Web3ChainClient
from basepulse.services.projection_queries import ProjectionQueries

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="BasePulse PollsContract indexer")


@app.command()
def start():
    """Run the indexer for every configured chain until interrupted."""
    asyncio.run(run_indexer())


@app.command()
def sync(
    from_block: int = typer.Argument(..., help="First block to replay"),
    to_block: Optional[int] = typer.Argument(None, help="Last block to replay (default: chain head)"),
    chain_id: Optional[int] = typer.Option(None, "--chain-id", help="Chain to replay (default: first configured)"),
):
    """Replay a block range through the handlers. The checkpoint is left alone."""
    async def _sync():
        setup_logging()
        chain = settings.get_chain(chain_id) if chain_id is not None else settings.chains[0]
        await init_database()
        try:
            async with Web3ChainClient(chain) as client:
                orchestrator = SyncOrchestrator(chain, client)
                summary = await orchestrator.resync(from_block, to_block)
        finally:
            await close_database()

        console.print(
            f"✅ Replayed blocks {summary['from_block']}-{summary['to_block']} on chain {summary['chain_id']}: "
            f"{summary['events_applied']} events applied, {summary['blocks_failed']} blocks failed"
        )
        if summary["blocks_failed"]:
            raise typer.Exit(code=1)

    try:
        asyncio.run(_sync())
    except ConfigurationError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=2)
    except BasePulseException as e:
        console.print(f"❌ Sync failed: {e.message}")
        raise typer.Exit(code=1)


@app.command()
def status():
    """Show checkpoints, chain heads and projection totals."""
    async def _status():
        setup_logging()
        await init_database()
        queries = ProjectionQueries()
        try:
            async with get_async_session() as db:
                checkpoints = {cp["chain_id"]: cp for cp in await queries.get_checkpoints(db)}
                totals = await queries.get_global_stats(db)
        finally:
            await close_database()

        table = Table(title="Sync status")
        table.add_column("Chain")
        table.add_column("Checkpoint", justify="right")
        table.add_column("Head", justify="right")
        table.add_column("Lag", justify="right")
        table.add_column("Last processed")

        for chain in settings.chains:
            checkpoint = checkpoints.get(chain.chain_id)
            head = None
            try:
                async with Web3ChainClient(chain) as client:
                    head = await client.current_height()
            except ChainClientError as e:
                logger.warning("Could not read chain head", chain_id=chain.chain_id, error=e.message)

            last_block = checkpoint["last_block_number"] if checkpoint else None
            lag = head - last_block if head is not None and last_block is not None else None
            table.add_row(
                str(chain.chain_id),
                "-" if last_block is None else str(last_block),
                "-" if head is None else str(head),
                "-" if lag is None else str(lag),
                str(checkpoint["last_processed_at"]) if checkpoint else "-",
            )

        console.print(table)
        console.print(
            f"Polls: {totals['total_polls']}  Participants: {totals['total_participants']}  "
            f"Votes: {totals['total_votes']}  Ledger rows: {totals['total_distributions']}"
        )

    asyncio.run(_status())


@app.command("init-db")
def init_db():
    """Create all tables directly from the models."""
    async def _init():
        setup_logging()
        await init_database()
        try:
            await DatabaseManager.create_tables()
        finally:
            await close_database()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def reset(yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt")):
    """Drop every projection table, checkpoints included."""
    if not yes and not typer.confirm("Are you sure you want to drop all tables?"):
        console.print("❌ Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        try:
            await DatabaseManager.drop_tables()
        finally:
            await close_database()
        console.print("🗑️ All tables dropped!")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database and RPC connectivity."""
    async def _health() -> bool:
        setup_logging()
        await init_database()
        try:
            healthy = await DatabaseManager.health_check()
        finally:
            await close_database()
        console.print(f"{'✅' if healthy else '❌'} Database")

        for chain in settings.chains:
            try:
                async with Web3ChainClient(chain) as client:
                    head = await client.current_height()
                console.print(f"✅ Chain {chain.chain_id} at block {head}")
            except ChainClientError as e:
                healthy = False
                console.print(f"❌ Chain {chain.chain_id}: {e.message}")
        return healthy

    if not asyncio.run(_health()):
        raise typer.Exit(code=1)


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, revision)

    console.print(f"✅ Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to specific revision."""
    alembic_cfg = Config("alembic.ini")
    command.downgrade(alembic_cfg, revision)

    console.print(f"⬇️ Database downgraded to: {revision}")


@app.command()
def current():
    """Show current database revision."""
    alembic_cfg = Config("alembic.ini")
    command.current(alembic_cfg)


if __name__ == "__main__":
    app()
