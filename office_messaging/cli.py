"""Command line interface for office-messaging."""

import asyncio
import json
from dataclasses import replace
from datetime import datetime
from typing import Optional

import click
from rich import box
from rich.console import Console
from rich.table import Table

from . import config
from .api import DashboardApi
from .cache import CacheJanitor, ClientCacheManager
from .notifications.quiet_hours import parse_time
from .notifications.scheduler import Alert, NotificationScheduler
from .notifications.settings import NotificationSettings, NotificationSettingsStore, QuietHours
from .offline import OfflineDetector
from .realtime.client import create_connection_manager
from .realtime.types import ConnectionState, EventKind, NewMessageEvent, User, UserRole
from .session import MessagingSession
from .storage import get_store
from .version import __version__


def _format_time(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _scheduler() -> NotificationScheduler:
    return NotificationScheduler(settings_store=NotificationSettingsStore(get_store()))


def _save(scheduler: NotificationScheduler, settings: NotificationSettings) -> None:
    if not scheduler.update_settings(settings):
        click.echo("Error: Failed to save notification settings", err=True)
        raise SystemExit(1)


@click.group()
@click.version_option(__version__, prog_name="office-messaging")
@click.help_option('-h', '--help')
@click.option('--debug', is_flag=True, help='Enable debug logging')
def cli(debug: bool):
    """Office messaging client.

    \b
    Commands:
      listen    Connect and print incoming messages and alerts
      cache     Inspect and clean the local cache
      settings  Show or change notification settings
      status    Show network status
    """
    config.configure_logging("DEBUG" if debug else None)


# =============================================================================
# listen
# =============================================================================

@cli.command()
@click.help_option('-h', '--help')
@click.option('--user-id', required=True, help='Your user id')
@click.option('--name', default='', help='Display name sent with typing indicators')
@click.option('--role', type=click.Choice([r.value for r in UserRole]), default='office',
              help='Your role')
@click.option('--url', default=None, help='WebSocket URL (default: OFFICE_MESSAGING_WS_URL)')
def listen(user_id: str, name: str, role: str, url: Optional[str]):
    """Connect to the messaging server and print events until interrupted."""
    user = User(id=user_id, name=name or user_id, role=UserRole(role))
    try:
        asyncio.run(_listen(user, url))
    except KeyboardInterrupt:
        click.echo("\nDisconnected")


async def _listen(user: User, url: Optional[str]) -> None:
    store = get_store()
    cache = ClientCacheManager(store=store)
    detector = OfflineDetector(store=store)
    api = DashboardApi(cache=cache, offline_detector=detector)
    connection = create_connection_manager(url=url, offline_detector=detector)
    scheduler = NotificationScheduler(settings_store=NotificationSettingsStore(store))
    session = MessagingSession(user, connection, scheduler, api=api)
    janitor = CacheJanitor(cache)
    gave_up = asyncio.Event()

    def print_message(event: NewMessageEvent) -> None:
        msg = event.message
        sender = msg.sender_name or msg.sender_id
        click.echo(f"[{msg.conversation_id}] {sender}: {msg.content}")

    def print_alert(alert: Alert) -> None:
        click.echo(click.style(f"🔔 {alert.title}: {alert.body}", fg="yellow"))

    def print_error(error: Exception) -> None:
        click.echo(click.style(f"Error: {error}", fg="red"), err=True)
        if connection.connection_state is ConnectionState.DISCONNECTED:
            gave_up.set()

    connection.subscribe(EventKind.MESSAGE, print_message)
    connection.subscribe(EventKind.ERROR, print_error)
    connection.subscribe(
        EventKind.CONNECTION_STATE_CHANGE,
        lambda state: click.echo(f"Connection: {state.value}"),
    )
    scheduler.on_alert(print_alert)

    detector.start()
    janitor.start()
    api.sync_queue.start()
    try:
        await session.start()
        await gave_up.wait()
    finally:
        janitor.stop()
        detector.stop()
        await session.stop()
        await api.aclose()


# =============================================================================
# cache
# =============================================================================

@cli.group()
@click.help_option('-h', '--help')
def cache():
    """Inspect and clean the local cache."""
    pass


@cache.command('stats')
def cache_stats():
    """Show entry count, size and age range."""
    manager = ClientCacheManager()
    stats = manager.get_stats()

    table = Table(title="Cache", box=box.SIMPLE)
    table.add_column("Metric", style="bold cyan", justify="right")
    table.add_column("Value")
    table.add_row("Store", manager.store.name)
    table.add_row("Entries", str(stats.total_entries))
    table.add_row("Size", f"{_format_size(stats.total_size)} / {_format_size(manager.max_size)}")
    table.add_row("Oldest", _format_time(stats.oldest_entry))
    table.add_row("Newest", _format_time(stats.newest_entry))
    table.add_row("Version", manager.version)
    Console().print(table)


@cache.command('keys')
def cache_keys():
    """List cached keys."""
    keys = ClientCacheManager().keys()
    if not keys:
        click.echo("Cache is empty")
        return
    for key in sorted(keys):
        click.echo(key)


@cache.command('clear')
@click.option('-y', '--yes', is_flag=True, help='Do not ask for confirmation')
def cache_clear(yes: bool):
    """Remove every cached entry."""
    if not yes and not click.confirm("Remove all cached entries?"):
        return
    removed = ClientCacheManager().clear()
    click.echo(f"✓ Removed {removed} entries")


@cache.command('cleanup')
def cache_cleanup():
    """Remove expired entries and trim the cache if it is nearly full."""
    expired, evicted = ClientCacheManager().run_maintenance()
    click.echo(f"✓ Removed {expired} expired entries, evicted {evicted}")


# =============================================================================
# settings
# =============================================================================

@cli.group()
@click.help_option('-h', '--help')
def settings():
    """Show or change notification settings."""
    pass


@settings.command('show')
@click.option('--json', 'as_json', is_flag=True, help='Print as JSON')
def settings_show(as_json: bool):
    """Show the current notification settings."""
    current = _scheduler().settings
    if as_json:
        click.echo(json.dumps(current.to_dict(), indent=2))
        return

    quiet = current.quiet_hours
    click.echo(f"Notifications: {'on' if current.enabled else 'off'}")
    click.echo(f"Alerts: {'on' if current.browser_notifications else 'off'}")
    click.echo(f"Sound: {current.sound.value}")
    click.echo(f"Preview: {current.preview.value}")
    click.echo(f"Grouping: {'on' if current.grouping else 'off'}")
    if quiet.enabled:
        click.echo(f"Quiet hours: {quiet.start}-{quiet.end}")
    else:
        click.echo("Quiet hours: off")
    for conversation_id, override in sorted(current.conversations.items()):
        if override.muted:
            click.echo(f"  {conversation_id}: muted")
        elif override.snoozed_until:
            click.echo(f"  {conversation_id}: snoozed until {_format_time(override.snoozed_until)}")


@settings.command('quiet-hours')
@click.argument('start')
@click.argument('end')
def settings_quiet_hours(start: str, end: str):
    """Enable quiet hours from START to END (HH:MM, may wrap past midnight)."""
    for value in (start, end):
        try:
            parse_time(value)
        except ValueError as e:
            raise click.BadParameter(str(e))

    scheduler = _scheduler()
    current = scheduler.settings
    _save(scheduler, replace(current, quiet_hours=QuietHours(enabled=True, start=start, end=end)))
    if start == end:
        click.echo("Warning: start equals end, so quiet hours will never be active", err=True)
    click.echo(f"✓ Quiet hours set to {start}-{end}")


@settings.command('quiet-hours-off')
def settings_quiet_hours_off():
    """Disable quiet hours."""
    scheduler = _scheduler()
    current = scheduler.settings
    quiet = QuietHours(enabled=False, start=current.quiet_hours.start, end=current.quiet_hours.end)
    _save(scheduler, replace(current, quiet_hours=quiet))
    click.echo("✓ Quiet hours disabled")


@settings.command('mute')
@click.argument('conversation_id')
def settings_mute(conversation_id: str):
    """Mute notifications for a conversation."""
    scheduler = _scheduler()
    if not scheduler.mute_conversation(conversation_id):
        click.echo("Error: Failed to save notification settings", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Muted {conversation_id}")


@settings.command('unmute')
@click.argument('conversation_id')
def settings_unmute(conversation_id: str):
    """Unmute a conversation."""
    scheduler = _scheduler()
    if not scheduler.unmute_conversation(conversation_id):
        click.echo("Error: Failed to save notification settings", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Unmuted {conversation_id}")


@settings.command('grouping')
@click.argument('state', type=click.Choice(['on', 'off']))
def settings_grouping(state: str):
    """Turn grouping of messages from the same sender on or off."""
    scheduler = _scheduler()
    current = scheduler.settings
    _save(scheduler, replace(current, grouping=state == "on"))
    click.echo(f"✓ Grouping {state}")


# =============================================================================
# status
# =============================================================================

@cli.command()
@click.option('--check', is_flag=True, help='Probe the server before reporting')
def status(check: bool):
    """Show network status and offline history."""
    detector = OfflineDetector(store=get_store())
    if check:
        asyncio.run(detector.check())

    state = detector.state
    network = "online" if state.is_online else "offline"
    click.echo(f"Network: {network}" if check else f"Network: {network} (last known)")
    click.echo(f"Reachability URL: {config.REACHABILITY_URL}")
    click.echo(f"Was offline: {'yes' if state.was_offline else 'no'}")
    if state.offline_since is not None:
        click.echo(f"Offline since: {_format_time(state.offline_since)}")
    if state.last_online_at is not None:
        click.echo(f"Last back online: {_format_time(state.last_online_at)}")


def main():
    cli()


if __name__ == "__main__":
    main()
