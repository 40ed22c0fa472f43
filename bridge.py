#!/usr/bin/env python3
"""mcbridge CLI - Matter <-> LwM2M bridge over CoAP.

Serves the attributes of a Matter device as LwM2M resources, and forwards
Matter attribute reads/writes to an LwM2M peer.

Examples:
    # Run with the in-memory Matter stack, documents from local files
    python bridge.py start --config examples/bridge.yaml --simulate

    # Fetch the documents from the peer device instead
    python bridge.py start --simulate --peer coap://[fd00::2]:5683 \\
        --object coap://[fd00::2]:5683/3311.xml \\
        --inbound-map coap://[fd00::2]:5683/lwm2m-matter.json \\
        --outbound-map coap://[fd00::2]:5683/matter-lwm2m.json

    # One-off requests
    python bridge.py get coap://[::1]:5683/3311/0/5850
    python bridge.py put coap://[::1]:5683/3311/0/5850 --hex 01
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

# Ensure the mcbridge package is importable
if __name__ == "__main__":
    import os
    sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from mcbridge.bridge import Bridge, build_stack, load_document
from mcbridge.bridge.resources import registrations_from_object
from mcbridge.coap.client import CoapClient, JsonDocumentDecoder, RawDecoder, XmlDocumentDecoder
from mcbridge.coap.protocol import Code, ContentFormat, code_name
from mcbridge.config import BridgeConfig, config_from_dict, load_config
from mcbridge.core.lwm2m import parse_object_definition
from mcbridge.core.mapping import build_identifier_map
from mcbridge.errors import BridgeError, ResponseError

app = typer.Typer(
    name="mcbridge",
    help="mcbridge - Matter <-> LwM2M (CoAP) bridge",
    add_completion=False,
)
console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )


def _build_config(
    config_path: Optional[str],
    host: Optional[str],
    port: Optional[int],
    peer: Optional[str],
    object_definition: Optional[str],
    inbound_map: Optional[str],
    outbound_map: Optional[str],
    confirmable: bool,
) -> BridgeConfig:
    try:
        config = load_config(config_path) if config_path else config_from_dict({})
    except (OSError, ValueError) as exc:
        console.print(f"[red]Error: cannot load config: {exc}[/red]")
        raise typer.Exit(1)

    # Command line options override the file
    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port
    if peer is not None:
        config.peer.uri = peer
    if object_definition is not None:
        config.documents.object_definition = object_definition
    if inbound_map is not None:
        config.documents.lwm2m_to_matter = inbound_map
    if outbound_map is not None:
        config.documents.matter_to_lwm2m = outbound_map
    if confirmable:
        config.client.confirmable = True

    try:
        config.validate()
    except ValueError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)
    return config


@app.command()
def start(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML/JSON configuration file",
    ),
    host: Optional[str] = typer.Option(
        None,
        "--host",
        help="Address to bind the CoAP server (default: ::)",
    ),
    port: Optional[int] = typer.Option(
        None,
        "--port",
        "-p",
        help="UDP port of the CoAP server (default: 5683)",
    ),
    peer: Optional[str] = typer.Option(
        None,
        "--peer",
        help="Base URI of the LwM2M peer, e.g. coap://[fd00::2]:5683",
    ),
    object_definition: Optional[str] = typer.Option(
        None,
        "--object",
        "-o",
        help="LwM2M object definition (coap:// URI or XML file)",
    ),
    inbound_map: Optional[str] = typer.Option(
        None,
        "--inbound-map",
        help="LwM2M->Matter mapping (coap:// URI or JSON file)",
    ),
    outbound_map: Optional[str] = typer.Option(
        None,
        "--outbound-map",
        help="Matter->LwM2M mapping (coap:// URI or JSON file)",
    ),
    confirmable: bool = typer.Option(
        False,
        "--confirmable",
        help="Send confirmable (CON) requests to the peer",
    ),
    simulate: bool = typer.Option(
        False,
        "--simulate",
        help="Use the in-memory Matter stack",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging",
    ),
) -> None:
    """Start the bridge.

    Serves the resources of the object definition over CoAP and, when a
    peer is configured, bridges Matter external attributes to it.
    """
    setup_logging(verbose)
    config = _build_config(
        config_path, host, port, peer, object_definition, inbound_map, outbound_map, confirmable
    )

    if not (simulate or config.matter.simulate):
        console.print(
            "[red]Error: no Matter stack attached. Use --simulate (or matter.simulate) "
            "to run with the in-memory stack.[/red]"
        )
        raise typer.Exit(1)

    # Display configuration
    table = Table(title="Bridge Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="yellow")
    table.add_row("CoAP server", f"{config.server.host} port {config.server.port}")
    table.add_row("Peer", config.peer.uri or "-")
    table.add_row("Object definition", config.documents.object_definition or "-")
    table.add_row("LwM2M -> Matter map", config.documents.lwm2m_to_matter or "-")
    table.add_row("Matter -> LwM2M map", config.documents.matter_to_lwm2m or "-")
    table.add_row("Requests", "CON" if config.client.confirmable else "NON")
    table.add_row("Read poll", f"{config.proxy.poll_attempts} x {config.proxy.poll_interval}s")
    table.add_row("Matter bindings", str(len(config.matter.bindings)))
    console.print(table)
    console.print()

    bridge = Bridge(config, build_stack(config))

    console.print(Panel.fit("[bold green]Starting bridge...[/bold green]"))

    async def run():
        # Handle graceful shutdown
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def signal_handler():
            console.print("\n[yellow]Shutting down...[/yellow]")
            stop_event.set()

        try:
            loop.add_signal_handler(signal.SIGINT, signal_handler)
            loop.add_signal_handler(signal.SIGTERM, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

        try:
            await bridge.start()
            console.print("[bold green]Bridge running. Press Ctrl+C to stop.[/bold green]")

            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=60)
                except asyncio.TimeoutError:
                    stats = bridge.get_stats()
                    console.print(
                        f"[dim]Stats: {stats['server']['requests']} requests, "
                        f"{stats['server']['errors']} errors, "
                        f"{stats['matter']['outstanding']} pending interactions[/dim]"
                    )
        except BridgeError as exc:
            console.print(f"[red]Startup failed: {exc}[/red]")
        finally:
            await bridge.stop()
            console.print("[green]Bridge stopped.[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


def _print_response(body: bytes, as_hex: bool) -> None:
    if as_hex:
        console.print(body.hex().upper() or "(empty)")
        return
    try:
        console.print(body.decode("utf-8") or "(empty)")
    except UnicodeDecodeError:
        console.print(body.hex().upper())


@app.command()
def get(
    uri: str = typer.Argument(..., help="coap:// URI of the resource"),
    as_hex: bool = typer.Option(False, "--hex", help="Print the body as hex"),
    confirmable: bool = typer.Option(False, "--confirmable", help="Send a CON request"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """GET a resource and print its body."""
    setup_logging(verbose)
    client = CoapClient(confirmable=confirmable)
    try:
        body = asyncio.run(client.get(uri, decoder=RawDecoder()))
    except ResponseError as exc:
        console.print(f"[red]{code_name(exc.code)}[/red]")
        raise typer.Exit(1)
    except BridgeError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)
    _print_response(body, as_hex)


@app.command()
def put(
    uri: str = typer.Argument(..., help="coap:// URI of the resource"),
    hex_payload: Optional[str] = typer.Option(
        None, "--hex", help="Raw payload as hex, e.g. 2A00 (omit for an empty PUT)"
    ),
    uint16: Optional[int] = typer.Option(None, "--uint", help="Unsigned 16-bit value (little-endian)"),
    boolean: Optional[bool] = typer.Option(None, "--bool/--no-bool", help="Boolean value"),
    confirmable: bool = typer.Option(False, "--confirmable", help="Send a CON request"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """PUT a raw little-endian value (or nothing, to execute a command)."""
    setup_logging(verbose)
    given = [v for v in (hex_payload, uint16, boolean) if v is not None]
    if len(given) > 1:
        console.print("[red]Error: use only one of --hex, --uint, --bool[/red]")
        raise typer.Exit(1)

    payload: Optional[bytes] = None
    try:
        if hex_payload is not None:
            payload = bytes.fromhex(hex_payload)
        elif uint16 is not None:
            payload = uint16.to_bytes(2, "little")
        elif boolean is not None:
            payload = b"\x01" if boolean else b"\x00"
    except (ValueError, OverflowError) as exc:
        console.print(f"[red]Error: invalid value: {exc}[/red]")
        raise typer.Exit(1)

    client = CoapClient(confirmable=confirmable)
    content_format = ContentFormat.OCTET_STREAM if payload is not None else None
    try:
        response = asyncio.run(client.exchange(uri, Code.PUT, payload, content_format))
    except ResponseError as exc:
        console.print(f"[red]{code_name(exc.code)}[/red]")
        raise typer.Exit(1)
    except BridgeError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]{code_name(response.code)}[/green]")


@app.command()
def mapping(
    source: str = typer.Argument(..., help="Mapping document (coap:// URI or JSON file)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Show the identifier tables built from a mapping document."""
    setup_logging(verbose)
    try:
        document = asyncio.run(load_document(source, JsonDocumentDecoder(), CoapClient()))
        ident = build_identifier_map(document)
    except BridgeError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)

    for title, table_map in (
        ("Clusters / Objects", ident.clusters),
        ("Attributes / Resources", ident.attributes),
        ("Commands / Resources", ident.commands),
        ("Events / Resources", ident.events),
    ):
        if not len(table_map):
            continue
        table = Table(title=title, show_header=True)
        table.add_column("Matter", style="cyan", justify="right")
        table.add_column("LwM2M", style="green", justify="right")
        for matter_id, oma_id in sorted(table_map.items()):
            table.add_row(f"0x{matter_id:04X}", str(oma_id))
        console.print(table)


@app.command()
def resources(
    source: str = typer.Argument(..., help="Object definition (coap:// URI or XML file)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Show the CoAP resources an object definition would register."""
    setup_logging(verbose)
    try:
        element = asyncio.run(load_document(source, XmlDocumentDecoder(), CoapClient()))
        definition = parse_object_definition(element)
    except BridgeError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Object {definition.id} ({definition.name})", show_header=True)
    table.add_column("Path", style="cyan")
    table.add_column("Name")
    table.add_column("Type", style="yellow")
    table.add_column("Ops")
    table.add_column("Methods", style="green")
    for reg in registrations_from_object(definition):
        methods = ", ".join(m.name for m in reg.methods)
        if reg.is_command:
            methods += " (invoke)"
        table.add_row(f"/{reg.path}", reg.name, reg.type_name or "-", str(reg.operations), methods)
    console.print(table)


@app.command()
def info() -> None:
    """Display bridge capabilities and usage information."""
    console.print(
        Panel.fit(
            "[bold]mcbridge - Matter <-> LwM2M bridge[/bold]\n\n"
            "Exposes Matter attributes as LwM2M resources over CoAP and\n"
            "bridges Matter external attributes to an LwM2M peer.\n\n"
            "[bold]LwM2M -> Matter:[/bold]\n"
            "  • GET  /obj/0/res  reads the mapped attribute (text/plain, Max-Age 1)\n"
            "  • PUT  /obj/0/res  writes raw little-endian bytes (W resources)\n"
            "  • PUT  /obj/0/res  invokes the mapped command (E resources)\n"
            "  • Add ?group to a command PUT to send it to the bound group\n\n"
            "[bold]Matter -> LwM2M:[/bold]\n"
            "  • External attribute reads/writes become GET/PUT on the peer\n"
            "  • Commands become an empty PUT on the mapped resource\n\n"
            "[bold]Supported value types:[/bold] Boolean, Unsigned Integer (16 bit)\n"
            "[bold]Supported commands:[/bold] OnOff Off / On / Toggle\n",
            title="About",
        )
    )


if __name__ == "__main__":
    app()
