import typer

from zapbatch.cli.enums import IdentifierType

RELAY_SCHEMES = ("ws://", "wss://")


def relay_urls_callback(ctx: typer.Context, value: list[str] | None):
    if ctx.resilient_parsing or not value:
        return value
    for url in value:
        if not url.startswith(RELAY_SCHEMES):
            raise typer.BadParameter(
                message=f"'{url}' is not a websocket URL, relay URLs must start with ws:// or wss://",
                param_hint="--relay, -r",
            )
    return value


def identifier_type_callback(ctx: typer.Context, value: str):
    if ctx.resilient_parsing:
        return
    if value not in IdentifierType.__members__.values():
        raise typer.BadParameter(
            message=f"'{value}' is not a supported identifier type, supported types are: {', '.join(IdentifierType.__members__.values())}",
        )
    return value
