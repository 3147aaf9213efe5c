"""
paymaster-flows command line.

Usage:
    paymaster-flows [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
import sys
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table
from web3 import Web3

from .address_book import AddressBook
from .config import PaymasterFlowsConfig, build_default_config
from .encoding import SponsorshipRequest
from .errors import PaymasterFlowError
from .fees import FeeQuote
from .flows import (
    LOCAL_DEMOS,
    FlowReport,
    SponsorshipFlow,
    erc20_mint_call,
    erc721_mint_call,
    loop_call,
    run_erc20_flow,
    run_erc721_flow,
    run_loop_flow,
)
from .logging_utils import mask_address, setup_logging
from .rpc_client import AllEndpointsFailedError, ChainIDMismatchError, RPCError, ZkSyncRPCClient
from .signer import LocalAccountSigner
from .transaction import SponsoredTransaction

console = Console()

FLOW_NAMES = ("erc20", "erc721", "loop")

LIVE_FLOWS: Dict[str, Callable[[SponsorshipFlow, AddressBook], Awaitable[FlowReport]]] = {
    "erc20": run_erc20_flow,
    "erc721": run_erc721_flow,
    "loop": run_loop_flow,
}


@click.group()
@click.version_option(package_name="paymaster-flows", message="%(prog)s %(version)s")
@click.option("--network", envvar="PAYMASTER_FLOWS_NETWORK", help="Network name (default: zksync_local)")
@click.option("--address-book", envvar="PAYMASTER_FLOWS_ADDRESS_BOOK", help="dotenv file with addresses")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, network: str | None, address_book: str | None, verbose: bool):
    """Gas sponsorship through zkSync paymasters."""
    ctx.ensure_object(dict)
    setup_logging("DEBUG" if verbose else "WARNING")

    config = build_default_config()
    if network:
        config.default_network = network
    if address_book:
        config.address_book_path = address_book

    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


def _run(coro: Awaitable[Any]) -> Any:
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except PaymasterFlowError as e:
        _fail(f"{type(e).__name__}: {e}")
    except (RPCError, AllEndpointsFailedError, ChainIDMismatchError) as e:
        _fail(str(e))
    except ValueError as e:
        _fail(str(e))


def _live_flow(config: PaymasterFlowsConfig, book: AddressBook) -> Tuple[ZkSyncRPCClient, SponsorshipFlow]:
    (private_key,) = book.require("empty_wallet_private_key")
    client = ZkSyncRPCClient(config.get_network_config())
    signer = LocalAccountSigner.from_key(private_key)
    return client, SponsorshipFlow(client, signer, config)


def _quote_table(flow_name: str, quote: FeeQuote) -> Table:
    table = Table(title=f"Fee quote: {flow_name}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="yellow", justify="right")
    table.add_row("Mode", quote.mode.value if quote.mode else "-")
    table.add_row("Gas limit", str(quote.gas_limit))
    table.add_row("Gas price (wei)", str(quote.gas_price))
    table.add_row("Fee (wei)", str(quote.fee_wei))
    table.add_row("Fee (ETH)", str(quote.fee_ether))
    return table


def _report_table(report: FlowReport) -> Table:
    table = Table(title=f"Sponsored {report.flow} transaction")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Tx hash", report.receipt.tx_hash)
    table.add_row("Block", str(report.receipt.block_number))
    table.add_row("Gas used", str(report.receipt.gas_used))
    table.add_row("Fee paid by paymaster (wei)", str(report.receipt.fee_wei))
    table.add_row("Paymaster balance", str(report.paymaster_delta))
    table.add_row("Sender native balance", str(report.sender_native_delta))
    if report.sender_token_delta is not None:
        table.add_row("Sender token balance", str(report.sender_token_delta))
    if report.paymaster_token_delta is not None:
        table.add_row("Paymaster token balance", str(report.paymaster_token_delta))
    return table


async def _quote_flow(flow: SponsorshipFlow, book: AddressBook, flow_name: str) -> FeeQuote:
    sender = flow.signer.address
    if flow_name == "erc20":
        paymaster, token = book.require("paymaster_address", "token_address")
        request = SponsorshipRequest.approval_based(paymaster, token, 1)
        _, quote = await flow.quote(request, token, erc20_mint_call(sender, 5))
    elif flow_name == "erc721":
        paymaster, collection = book.require("paymaster_address", "nft_address")
        request = SponsorshipRequest.general(paymaster)
        _, quote = await flow.quote(request, collection, erc721_mint_call(sender, "Time Stone"))
    else:
        paymaster, loop = book.require("paymaster_address", "loop_address")
        request = SponsorshipRequest.general(paymaster)
        _, quote = await flow.quote(
            request, loop, loop_call(),
            gas_limit_override=flow.config.fees.default_fixed_gas_limit,
        )
    return quote


@cli.command()
@click.pass_context
def status(ctx):
    """Show network and address book configuration."""
    config: PaymasterFlowsConfig = ctx.obj["config"]
    book = AddressBook.load(config.address_book_path)

    console.print("\n[bold blue]paymaster-flows status[/bold blue]\n")
    try:
        network = config.get_network_config()
    except ValueError as e:
        _fail(str(e))
        return
    console.print(f"Network: [cyan]{network.display_name}[/cyan] (chain id {network.chain_id})")
    console.print(f"RPC: [cyan]{network.get_primary_rpc_url()}[/cyan]")
    console.print(f"Address book: [cyan]{config.address_book_path}[/cyan]\n")

    table = Table(title="Address book")
    table.add_column("Entry", style="cyan")
    table.add_column("Value")
    for name in ("paymaster_address", "token_address", "nft_address", "loop_address"):
        value = getattr(book, name)
        table.add_row(name, value or "[yellow]Not configured[/yellow]")
    for name in ("empty_wallet_private_key", "deployer_private_key"):
        value = getattr(book, name)
        table.add_row(name, mask_address(value) if value else "[yellow]Not configured[/yellow]")
    console.print(table)
    console.print()


@cli.command()
@click.argument("flow_name", type=click.Choice(FLOW_NAMES))
@click.option("--local", is_flag=True, help="Quote against an in-process rollup")
@click.pass_context
def quote(ctx, flow_name: str, local: bool):
    """Estimate the fee of a sponsored flow."""
    config: PaymasterFlowsConfig = ctx.obj["config"]

    async def go() -> FeeQuote:
        if local:
            setup, _ = LOCAL_DEMOS[flow_name]
            demo = setup()
            flow = SponsorshipFlow(demo.rollup, demo.signer, config)
            return await _quote_flow(flow, demo.book, flow_name)

        book = AddressBook.load(config.address_book_path)
        client, flow = _live_flow(config, book)
        async with client:
            return await _quote_flow(flow, book, flow_name)

    result = _run(go())
    console.print(_quote_table(flow_name, result))


@cli.command()
@click.argument("flow_name", type=click.Choice(FLOW_NAMES))
@click.option("--local", is_flag=True, help="Run against an in-process rollup")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for finality")
@click.pass_context
def run(ctx, flow_name: str, local: bool, timeout: Optional[float]):
    """Run a sponsored flow from the empty wallet."""
    config: PaymasterFlowsConfig = ctx.obj["config"]
    if timeout is not None:
        config.submission.confirmation_timeout_seconds = timeout

    async def go() -> tuple[FlowReport, dict]:
        if local:
            setup, runner = LOCAL_DEMOS[flow_name]
            demo = setup()
            flow = SponsorshipFlow(demo.rollup, demo.signer, config)
            report = await runner(flow, demo.book)
            return report, flow.flow_logger.get_transaction_metrics()

        book = AddressBook.load(config.address_book_path)
        client, flow = _live_flow(config, book)
        async with client:
            report = await LIVE_FLOWS[flow_name](flow, book)
            return report, flow.flow_logger.get_transaction_metrics()

    report, metrics = _run(go())
    console.print(_report_table(report))
    if ctx.obj.get("verbose"):
        console.print(f"[dim]Transactions: {metrics['total_transactions']} {metrics['status_breakdown']}[/dim]")
    console.print("[green]✓ Paymaster covered the fee[/green]")


@cli.command()
@click.option("--amount", default="0.06", help="ETH to send to the paymaster")
@click.pass_context
def fund(ctx, amount: str):
    """Send ETH from the deployer wallet to the paymaster."""
    config: PaymasterFlowsConfig = ctx.obj["config"]
    book = AddressBook.load(config.address_book_path)

    async def go() -> Tuple[str, str]:
        deployer_key, paymaster = book.require("deployer_private_key", "paymaster_address")
        signer = LocalAccountSigner.from_key(deployer_key)
        client = ZkSyncRPCClient(config.get_network_config())
        async with client:
            flow = SponsorshipFlow(client, signer, config)
            tx = SponsoredTransaction(
                from_address=signer.address,
                to=paymaster,
                value=Web3.to_wei(amount, "ether"),
            )
            gas_limit = await client.estimate_gas(tx)
            gas_price = await client.get_gas_price()
            receipt = await flow.submitter.submit(tx.with_fee(gas_limit, gas_price))
            return paymaster, receipt.tx_hash

    paymaster, tx_hash = _run(go())
    console.print(f"[green]✓ Funded {paymaster} with {amount} ETH[/green] ({tx_hash})")


@cli.command("new-wallet")
@click.option("--force", is_flag=True, help="Replace an existing empty wallet key")
@click.pass_context
def new_wallet(ctx, force: bool):
    """Create the throwaway empty wallet and store its key in the address book."""
    config: PaymasterFlowsConfig = ctx.obj["config"]
    book = AddressBook.load(config.address_book_path)
    if book.empty_wallet_private_key and not force:
        _fail(
            f"{config.address_book_path} already has an empty wallet "
            f"({LocalAccountSigner.from_key(book.empty_wallet_private_key).address}); use --force to replace it"
        )
        return

    signer = LocalAccountSigner.create_random()
    AddressBook.record(config.address_book_path, "EMPTY_WALLET_PRIVATE_KEY", signer.private_key)
    console.print(f"[green]✓ Empty wallet {signer.address}[/green] recorded in {config.address_book_path}")


if __name__ == "__main__":
    cli()
