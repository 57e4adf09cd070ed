#!/usr/bin/env python3
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Optional

import click
import structlog

from fairvrf.chain.rotator import ChainRotator
from fairvrf.chain.store import ChainStore
from fairvrf.config import OracleSettings, configure_logging, log_error
from fairvrf.errors import OracleError

logger = structlog.get_logger()


@click.group()
@click.option("--log-level", type=str, default=None, help="Override LOG_LEVEL")
@click.option("--console-logs", is_flag=True, help="Human-readable logs instead of JSON")
@click.pass_context
def cli(ctx, log_level: Optional[str], console_logs: bool):
    """FairVRF oracle command line interface"""
    settings = OracleSettings()
    configure_logging(
        log_level=log_level or settings.log_level,
        json_logs=settings.json_logs and not console_logs,
    )
    ctx.obj = settings


@cli.command()
@click.pass_obj
def run(settings: OracleSettings):
    """Watch the contract and fulfill randomness requests"""
    from fairvrf.service import OracleService

    try:
        service = OracleService.from_settings(settings)
    except OracleError as e:
        click.echo(f"Error: {e}")
        sys.exit(1)

    async def main():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, service.stop)
        await service.run()

    try:
        asyncio.run(main())
    except OracleError as e:
        log_error(logger, e, {"command": "run"})
        sys.exit(1)


@cli.command("generate-chain")
@click.option("--length", type=int, default=None, help="Number of seeds (default CHAIN_LENGTH)")
@click.option("--out", type=click.Path(dir_okay=False), default=None, help="Chain file (default CHAIN_PATH)")
@click.option("--publish", is_flag=True, help="Commit the new anchor on the contract via setAnchor")
@click.pass_obj
def generate_chain(settings: OracleSettings, length: Optional[int], out: Optional[str], publish: bool):
    """Generate a new hash chain, archiving any existing one"""
    length = length or settings.chain_length
    chain_path = Path(out) if out else Path(settings.chain_path)
    policy = settings.rotation_policy()

    try:
        if chain_path.exists():
            store = ChainStore.load(chain_path, policy)
        else:
            store = ChainStore(chain_path=chain_path, policy=policy)
    except OracleError as e:
        click.echo(f"Error: {e}")
        sys.exit(1)

    publisher = None
    if publish:
        from fairvrf.ledger.base import make_anchor_publisher
        from fairvrf.ledger.web3_ledger import Web3Ledger

        try:
            publisher = make_anchor_publisher(Web3Ledger.from_settings(settings))
        except OracleError as e:
            click.echo(f"Error: {e}")
            sys.exit(1)

    click.echo(f"\nGenerating hash chain of length {length}...")
    rotator = ChainRotator(store, policy=policy, publish_anchor=publisher, default_length=length)
    anchor = asyncio.run(rotator.rotate(length))

    click.echo(f"Chain saved to {chain_path}")
    click.echo(f"Anchor: {anchor}")
    if publish and rotator.pending_publication is not None:
        click.echo("Error: anchor publication failed; call setAnchor manually")
        sys.exit(1)
    if publish:
        click.echo("Anchor committed on the contract")
    else:
        click.echo("Commit this anchor on the contract with setAnchor before serving requests")


@cli.command()
@click.option("--chain", "chain_file", type=click.Path(dir_okay=False), default=None,
              help="Chain file (default CHAIN_PATH)")
@click.pass_obj
def status(settings: OracleSettings, chain_file: Optional[str]):
    """Show chain consumption and health"""
    chain_path = Path(chain_file) if chain_file else Path(settings.chain_path)
    try:
        store = ChainStore.load(chain_path, settings.rotation_policy())
    except OracleError as e:
        click.echo(f"Error: {e}")
        sys.exit(1)

    click.echo(json.dumps({
        "chain_path": str(chain_path),
        "anchor": store.current_anchor(),
        "stats": store.stats().to_dict(),
        "health": store.health().to_dict(),
    }, indent=2))


def main():
    cli()


if __name__ == "__main__":
    main()
