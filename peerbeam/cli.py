"""
PeerBeam CLI - Command line interface for mesh chat.
"""

import asyncio
import logging
import socket
import sys
from typing import List, Optional

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from .config import get_config
from .exceptions import MalformedEnvelope, TransportUnavailable
from .mesh import ChatMessage, MeshCoordinator, PeerIdentity
from .mesh.rtc import AiortcBackend
from .transport import ManualTransport, RelayTransport

console = Console()


def setup_logging(verbose: bool = False):
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler()]
    )


def run_async(coro):
    """Run an async function."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        return loop.run_until_complete(coro)


def get_lan_addresses() -> List[str]:
    """Local IPv4 addresses other peers on the LAN can reach."""
    addresses = []
    try:
        for ip in socket.gethostbyname_ex(socket.gethostname())[2]:
            if not ip.startswith("127.") and ip not in addresses:
                addresses.append(ip)
    except socket.gaierror:
        pass

    # Route lookup finds the primary interface (nothing is sent)
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.settimeout(0.1)
        s.connect(('8.8.8.8', 80))
        route_ip = s.getsockname()[0]
        s.close()
        if not route_ip.startswith("127.") and route_ip not in addresses:
            addresses.insert(0, route_ip)
    except OSError:
        pass

    return addresses


def _resolve_name(name: Optional[str]) -> str:
    config = get_config()
    return name or config.display_name or socket.gethostname() or "peer"


def _make_backend() -> AiortcBackend:
    return AiortcBackend(get_config().ice_servers)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.pass_context
def main(ctx, verbose):
    """📡 PeerBeam - Peer-to-peer mesh chat"""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    setup_logging(verbose)


@main.command()
@click.option('--host', '-h', default=None, help='Host to bind to')
@click.option('--port', '-p', default=None, type=int, help='Port to bind to')
def serve(host: Optional[str], port: Optional[int]):
    """Start the PeerBeam relay server."""
    import uvicorn
    from .server.app import create_app

    config = get_config()
    host = host or config.server.host
    port = port or config.server.port

    console.print(f"\n[bold blue]📡 Starting PeerBeam Relay[/bold blue]")
    console.print(f"   Listening on: ws://{host}:{port}")
    for address in get_lan_addresses():
        console.print(f"   LAN: [cyan]ws://{address}:{port}[/cyan]")
    console.print(f"   Press Ctrl+C to stop\n")

    app = create_app(cors_origins=config.server.cors_origins)
    uvicorn.run(app, host=host, port=port, log_level="info")


@main.command()
@click.argument('name', required=False)
def name(name: Optional[str]):
    """Show or set your display name."""
    config = get_config()

    if name is None:
        if config.display_name:
            console.print(f"Display name: [cyan]{config.display_name}[/cyan]")
        else:
            console.print("[dim]No display name set.[/dim] Use 'peerbeam name NAME'.")
        return

    name = name.strip()
    if not name:
        console.print("[red]Display name cannot be empty.[/red]")
        sys.exit(1)

    config.display_name = name
    config.save()
    console.print(f"[green]✓[/green] Display name set to [cyan]{name}[/cyan]")


@main.command()
@click.option('--server', '-s', help='Signaling server URL')
@click.option('--watch', '-w', is_flag=True, help='Keep polling until interrupted')
def rooms(server: Optional[str], watch: bool):
    """List active rooms on the relay server."""
    config = get_config()
    url = server or config.server_url

    async def fetch():
        identity = PeerIdentity.generate(_resolve_name(None))
        mesh = MeshCoordinator(identity, RelayTransport(url, config.connect_timeout), _make_backend())
        await mesh.connect()
        try:
            while True:
                _print_rooms(url, await mesh.list_rooms(timeout=config.connect_timeout))
                if not watch:
                    return
                await asyncio.sleep(config.room_poll_interval)
        finally:
            await mesh.leave()

    try:
        run_async(fetch())
    except TransportUnavailable as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)
    except asyncio.TimeoutError:
        console.print("[red]✗ Server did not answer the room listing.[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


def _print_rooms(url: str, listing) -> None:
    if not listing:
        console.print("[dim]No active rooms.[/dim]")
        return

    table = Table(title=f"Rooms on {url}")
    table.add_column("Room", style="cyan")
    table.add_column("Peers", justify="right")
    table.add_column("Members")
    for room in listing:
        table.add_row(room.id, str(room.peer_count), ", ".join(p.name or p.id for p in room.peers))
    console.print(table)


@main.command()
@click.argument('room', required=False)
@click.option('--server', '-s', help='Signaling server URL')
@click.option('--name', '-n', 'display_name', help='Display name for this session')
def chat(room: Optional[str], server: Optional[str], display_name: Optional[str]):
    """Create or join a room and chat."""
    config = get_config()
    url = server or config.server_url
    identity = PeerIdentity.generate(_resolve_name(display_name))

    async def session():
        mesh = MeshCoordinator(identity, RelayTransport(url, config.connect_timeout), _make_backend())
        _attach_printers(mesh)
        await mesh.connect()
        room_id = await mesh.create_or_join(room)
        console.print(Panel(
            f"Room [bold cyan]{room_id}[/bold cyan] on {url}\n"
            f"You are [bold]{identity.display_name}[/bold]. Type /peers or /quit.",
            title="📡 PeerBeam",
        ))
        await _chat_loop(mesh)

    try:
        run_async(session())
    except TransportUnavailable as e:
        console.print(f"[red]✗ {e}[/red]")
        console.print("  Start a relay with 'peerbeam serve' or pass --server.")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


@main.group()
def manual():
    """Two-party chat without a server, using copy/paste codes."""
    pass


@manual.command('create')
@click.option('--name', '-n', 'display_name', help='Display name for this session')
def manual_create(display_name: Optional[str]):
    """Create an offer code and wait for the answer code."""
    identity = PeerIdentity.generate(_resolve_name(display_name))

    async def session():
        transport = ManualTransport(creator=True)
        mesh = MeshCoordinator(identity, transport, _make_backend())
        _attach_printers(mesh)
        await mesh.connect()
        await mesh.join("manual")

        offer_code = await transport.next_code()
        console.print(Panel(offer_code, title="Offer code: send this to the other person"))

        while True:
            answer_code = await _prompt("Paste the answer code")
            try:
                await transport.apply_code(answer_code)
                break
            except MalformedEnvelope as e:
                console.print(f"[red]✗ {e}[/red]")

        console.print("[dim]Connecting...[/dim] Type /peers or /quit.")
        await _chat_loop(mesh)

    try:
        run_async(session())
    except KeyboardInterrupt:
        pass


@manual.command('join')
@click.option('--name', '-n', 'display_name', help='Display name for this session')
def manual_join(display_name: Optional[str]):
    """Paste an offer code and reply with an answer code."""
    identity = PeerIdentity.generate(_resolve_name(display_name))

    async def session():
        transport = ManualTransport(creator=False)
        mesh = MeshCoordinator(identity, transport, _make_backend())
        _attach_printers(mesh)
        await mesh.connect()
        await mesh.join("manual")

        while True:
            offer_code = await _prompt("Paste the offer code")
            try:
                await transport.apply_code(offer_code)
                break
            except MalformedEnvelope as e:
                console.print(f"[red]✗ {e}[/red]")

        answer_code = await transport.next_code()
        console.print(Panel(answer_code, title="Answer code: send this back"))
        console.print("[dim]Connecting...[/dim] Type /peers or /quit.")
        await _chat_loop(mesh)

    try:
        run_async(session())
    except KeyboardInterrupt:
        pass


# === Chat session helpers ===

def _attach_printers(mesh: MeshCoordinator) -> None:
    def on_message(message: ChatMessage):
        console.print(f"[bold magenta]{message.sender_name}[/bold magenta]: {message.text}")

    def on_peer_join(peer_id: str, peer_name: str):
        console.print(f"[dim]→ {peer_name or peer_id} is joining[/dim]")

    def on_peer_leave(peer_id: str, peer_name: str):
        console.print(f"[dim]← {peer_name or peer_id} left[/dim]")

    def on_peer_failed(peer_id: str, peer_name: str):
        console.print(f"[yellow]! Could not connect to {peer_name or peer_id}[/yellow]")

    seen = set()

    def on_roster_change(roster):
        for peer in roster:
            if peer.id not in seen:
                seen.add(peer.id)
                console.print(f"[green]✓ Connected to {peer.name or peer.id}[/green]")
        seen.intersection_update(p.id for p in roster)

    mesh.on_message = on_message
    mesh.on_peer_join = on_peer_join
    mesh.on_peer_leave = on_peer_leave
    mesh.on_peer_failed = on_peer_failed
    mesh.on_roster_change = on_roster_change


async def _prompt(label: str) -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: click.prompt(label).strip())


async def _chat_loop(mesh: MeshCoordinator) -> None:
    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            text = line.strip()
            if not text:
                continue

            if text == "/quit":
                break
            if text == "/peers":
                roster = mesh.roster()
                if not roster:
                    console.print("[dim]No connected peers.[/dim]")
                for peer in roster:
                    console.print(f"  • {peer.name or peer.id} [dim]({peer.id})[/dim]")
                continue

            if not mesh.roster():
                console.print("[yellow]No connected peers yet; message not sent.[/yellow]")
                continue
            mesh.send_message(text)
    finally:
        await mesh.leave()


if __name__ == '__main__':
    main()
