import asyncio
import logging
from datetime import datetime
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from zapbatch.batching.lookups import parse_address
from zapbatch.cli.callbacks import identifier_type_callback, relay_urls_callback
from zapbatch.cli.enums import IdentifierType, TagType
from zapbatch.config import AppConfig, ViewerConfig
from zapbatch.context import AppContext
from zapbatch.identifiers import create_req_from_type
from zapbatch.logging import setup_logging
from zapbatch.models import NostrEvent, ProfileResult
from zapbatch.pool import SubscriptionHandlers
from zapbatch.stats import extract_amount_from_bolt11

app = typer.Typer(no_args_is_help=True)

RelayOption = Annotated[
    list[str] | None,
    typer.Option(
        "-r",
        "--relay",
        help="Relay URL to query, can be repeated",
        callback=relay_urls_callback,
    ),
]


def build_context(*, config: AppConfig) -> AppContext:
    return AppContext(config=config)


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("-v", "--verbose", help="Enable debug logging")] = False,
):
    """Batched zap receipt, reference and profile lookups over Nostr relays"""
    setup_logging(level=logging.DEBUG if verbose else logging.WARNING)


def print_profiles(pubkeys: list[str], profiles: list[ProfileResult]):
    table = Table("Pubkey", "Name", "NIP-05", "About", title="Profiles")
    for pubkey, profile in zip(pubkeys, profiles):
        table.add_row(
            f"{pubkey[:8]}...{pubkey[-4:]}",
            profile.name or "",
            profile.nip05 or "",
            (profile.about or "")[:60],
        )
    Console().print(table)


def print_event(event: NostrEvent, title: str):
    values = "\n".join(
        [
            f"ID: {event.id}",
            f"Kind: {event.kind}",
            f"Author: {event.pubkey}",
            f"Created At: {datetime.fromtimestamp(event.created_at):%Y-%m-%d %H:%M:%S}",
            f"Content: {event.content[:280]}",
        ]
    )
    Console().print(Panel(values, title=title, expand=False, highlight=True))


@app.command(name="profiles")
def fetch_profiles(
    pubkeys: Annotated[list[str], typer.Argument(help="Hex public keys of the authors")],
    relays: RelayOption = None,
):
    """Fetch author profiles with batched relay lookups"""
    config = AppConfig.from_env()
    if relays:
        config.profile.relays = list(relays)

    async def run() -> list[ProfileResult]:
        async with build_context(config=config) as context:
            return await context.profile_pool.fetch_profiles(pubkeys)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
    ) as progress:
        progress.add_task(description="Fetching profiles from relays...", total=None)
        profiles = asyncio.run(run())
    print_profiles(pubkeys=pubkeys, profiles=profiles)


@app.command(name="reference")
def fetch_reference(
    reference: Annotated[
        str, typer.Argument(help="Event id, or kind:pubkey:identifier address")
    ],
    relays: RelayOption = None,
):
    """Resolve a referenced event the way zap receipts are resolved"""
    if not relays:
        typer.echo("At least one --relay is required")
        raise typer.Exit(1)
    tag_type = TagType.a if parse_address(reference) is not None else TagType.e
    carrier = NostrEvent(
        id="cli",
        pubkey="",
        created_at=0,
        kind=9735,
        tags=[[tag_type.value, reference]],
    )
    config = AppConfig.from_env()

    async def run() -> NostrEvent | None:
        async with build_context(config=config) as context:
            await context.event_pool.connect_to_relays(relays)
            return await context.event_pool.fetch_reference(carrier, tag_type.value)

    event = asyncio.run(run())
    if event is None:
        typer.echo(f"Reference {reference} not found")
        raise typer.Exit(1)
    print_event(event=event, title=f"{tag_type.value} reference")


def _decoded_data(identifier_type: str, data: str) -> Any:
    if identifier_type == IdentifierType.nprofile:
        return {"pubkey": data}
    if identifier_type == IdentifierType.nevent:
        return {"id": data}
    if identifier_type == IdentifierType.naddr:
        pointer = parse_address(data)
        if pointer is None:
            raise typer.BadParameter(
                message=f"'{data}' is not a kind:pubkey:identifier address",
                param_hint="DATA",
            )
        return pointer.model_dump()
    return data


@app.command(name="watch")
def watch_zaps(
    identifier_type: Annotated[
        str,
        typer.Argument(help="Decoded identifier type", callback=identifier_type_callback),
    ],
    data: Annotated[
        str, typer.Argument(help="Hex id or pubkey, or kind:pubkey:identifier for naddr")
    ],
    relays: RelayOption = None,
    seconds: Annotated[
        float, typer.Option("-s", "--seconds", help="How long to keep the stream open")
    ] = 30.0,
):
    """Stream zap receipts, tagging each as live or backfill"""
    if not relays:
        typer.echo("At least one --relay is required")
        raise typer.Exit(1)
    spec = create_req_from_type(identifier_type, _decoded_data(identifier_type, data))
    if spec is None:
        raise typer.Exit(1)
    config = AppConfig.from_env()
    console = Console()

    def on_event(event: NostrEvent):
        amount_sats = extract_amount_from_bolt11(event.get_tag_value("bolt11")) // 1000
        label = "[green]live[/green]" if event.is_realtime_event else "[dim]backfill[/dim]"
        console.print(
            f"{label} {datetime.fromtimestamp(event.created_at):%Y-%m-%d %H:%M:%S} "
            f"{amount_sats} sats {event.id[:12]}"
        )

    async def run() -> None:
        async with build_context(config=config) as context:
            context.event_pool.subscribe_to_zaps(
                "cli",
                ViewerConfig(identifier=data, relay_urls=list(relays)),
                spec,
                SubscriptionHandlers(
                    on_event=on_event,
                    on_eose=lambda: console.print("[yellow]end of stored receipts[/yellow]"),
                ),
            )
            await asyncio.sleep(seconds)

    asyncio.run(run())


if __name__ == "__main__":
    app()
