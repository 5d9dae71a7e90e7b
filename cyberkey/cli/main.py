"""
CLI interface for CyberKey.

Triggers for the scheduled scans and sweeps, schema setup, demo data and
the HTTP server.
"""

import logging
import sys
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cyberkey.config.loader import AppConfig, load_config
from cyberkey.core.errors import CyberKeyError
from cyberkey.core.maintenance import purge_old_activity_logs, sweep_expired_keys
from cyberkey.core.scanner import ScanResult
from cyberkey.core.services import Services, build_services
from cyberkey.notifications.push import Notification
from cyberkey.storage.models import AlertStatus
from cyberkey.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

# Background triggers never fail the scheduler; only setup errors do
EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_config_path: Optional[str] = None


def configure_logging(level: str = "INFO") -> None:
    """Route log records through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _load() -> AppConfig:
    try:
        return load_config(_config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _services() -> Services:
    return build_services(_load())


def _print_no_store_hint(error: str) -> None:
    if "no such table" in error.lower():
        console.print("\n[bold yellow]The store is not initialized[/]")
        console.print("Run `cyberkey init` to create the database\n")


def _display_scan_result(title: str, result: ScanResult) -> None:
    table = Table(title=title)
    table.add_column("Keys found", justify="right")
    table.add_column("Notified", justify="right", style="green")
    table.add_column("Skipped", justify="right", style="dim")
    table.add_column("Failed", justify="right", style="red")
    table.add_row(str(result.keys_found), str(result.notified), str(result.skipped), str(result.failed))
    console.print(table)
    if result.error:
        console.print(f"[red]Scan error:[/] {result.error}")
        _print_no_store_hint(result.error)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration (defaults to $CYBERKEY_CONFIG)"
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        help="Logging level"
    ),
):
    """CyberKey CLI."""
    global _config_path
    _config_path = config
    configure_logging(log_level)
    if ctx.invoked_subcommand is None:
        console.print("CyberKey - Use --help to see available commands")


@app.command()
def init():
    """Initialize the CyberKey database."""
    config = _load()
    try:
        initialize_schema(config.storage.db_path)
        console.print(f"[green]✓[/] Database initialized at {config.storage.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("scan-expiring-keys")
def scan_expiring_keys(
    channel: str = typer.Option(
        "smtp",
        "--channel",
        help="Delivery channel: smtp or push"
    ),
):
    """Notify owners of keys expiring within the lookahead window."""
    services = _services()
    try:
        scanner = services.expiring_key_scanner(channel)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _display_scan_result("Expiring API keys", scanner.scan())
    sys.exit(EXIT_CODE_PASS)


@app.command("scan-low-balances")
def scan_low_balances(
    channel: str = typer.Option(
        "smtp",
        "--channel",
        help="Delivery channel: smtp or push"
    ),
):
    """Notify owners of keys whose balance fell under their threshold."""
    services = _services()
    try:
        scanner = services.low_balance_scanner(channel)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _display_scan_result("Low balance API keys", scanner.scan())
    sys.exit(EXIT_CODE_PASS)


@app.command("purge-activity-logs")
def purge_activity_logs(
    days: Optional[int] = typer.Option(
        None,
        "--days",
        "-d",
        help="Days of history to keep (defaults to retention.activity_log_days)"
    ),
):
    """Delete activity logs older than the retention window."""
    services = _services()
    retention_days = days or services.config.retention.activity_log_days
    try:
        deleted = purge_old_activity_logs(services.store.activity_logs, retention_days)
        console.print(f"[green]✓[/] Deleted {deleted} activity logs older than {retention_days} days")
    except CyberKeyError as e:
        console.print(f"[red]Error purging activity logs:[/] {str(e)}")
        _print_no_store_hint(str(e))
    sys.exit(EXIT_CODE_PASS)


@app.command("sweep-expired-keys")
def sweep_expired_keys_command():
    """Delete every API key whose expiry has passed."""
    services = _services()
    try:
        deleted = sweep_expired_keys(services.store.api_keys)
        console.print(f"[green]✓[/] Deleted {deleted} expired API keys")
    except CyberKeyError as e:
        console.print(f"[red]Error sweeping expired keys:[/] {str(e)}")
        _print_no_store_hint(str(e))
    sys.exit(EXIT_CODE_PASS)


@app.command("send-notification")
def send_notification(
    user_id: str = typer.Argument(..., help="User whose devices receive the notification"),
    title: str = typer.Option(..., "--title", "-t", help="Notification title"),
    body: str = typer.Option(..., "--body", "-b", help="Notification body"),
    data: Optional[List[str]] = typer.Option(
        None,
        "--data",
        help="Extra data as key=value, repeatable"
    ),
):
    """Push a notification to every device of a user."""
    payload = {}
    for item in data or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            console.print(f"[red]Invalid data item:[/] {item} (expected key=value)")
            sys.exit(EXIT_CODE_FAIL)
        payload[key] = value

    try:
        notification = Notification(title=title, body=body, data=payload)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    result = _services().dispatcher.dispatch(user_id, notification)
    if not result.success:
        console.print(f"[red]Dispatch failed:[/] {result.error}")
        sys.exit(EXIT_CODE_FAIL)
    if result.no_devices:
        console.print(f"[yellow]User {user_id} has no registered devices[/]")
    else:
        console.print(
            f"[green]✓[/] Delivered to {result.success_count} devices, "
            f"{result.failure_count} failed"
        )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def alerts(
    user_id: str = typer.Argument(..., help="Owner of the alerts"),
    status: Optional[str] = typer.Option(
        None,
        "--status",
        "-s",
        help="Filter by status: new, acknowledged or resolved"
    ),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum alerts to show"),
):
    """List a user's security alerts, newest first."""
    try:
        status_filter = AlertStatus(status) if status else None
    except ValueError:
        console.print(f"[red]Unknown status:[/] {status}")
        sys.exit(EXIT_CODE_FAIL)

    services = _services()
    try:
        records = services.store.alerts.list_for_user(user_id, status=status_filter, limit=limit)
    except CyberKeyError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        _print_no_store_hint(str(e))
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print("\n[dim]No security alerts found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Security alerts for {user_id}")
    table.add_column("ID", overflow="fold")
    table.add_column("Type", no_wrap=True)
    table.add_column("Severity")
    table.add_column("Activities", justify="right")
    table.add_column("Status")
    table.add_column("Time", no_wrap=True)
    for alert in records:
        severity_style = "red" if alert.severity.value == "high" else "yellow"
        table.add_row(
            alert.id,
            alert.type,
            f"[{severity_style}]{alert.severity.value}[/]",
            str(alert.activity_count),
            alert.status.value,
            alert.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("update-alert")
def update_alert(
    alert_id: str = typer.Argument(..., help="Alert to update"),
    status: str = typer.Argument(..., help="New status: acknowledged or resolved"),
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Require the alert to belong to this user"),
):
    """Acknowledge or resolve a security alert."""
    try:
        new_status = AlertStatus(status)
    except ValueError:
        console.print(f"[red]Unknown status:[/] {status}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        _services().store.alerts.update_status(alert_id, new_status, user_id=user_id)
    except CyberKeyError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Alert {alert_id} marked {new_status.value}")
    sys.exit(EXIT_CODE_PASS)


@app.command("seed-demo")
def seed_demo():
    """Insert demo users, keys and devices."""
    from cyberkey.demo.seed_demo_data import seed_demo_data

    config = _load()
    initialize_schema(config.storage.db_path)
    services = build_services(config)
    if services.api_keys is None:
        console.print("[red]Error:[/] set CYBERKEY_ENCRYPTION_KEY to seed demo keys")
        sys.exit(EXIT_CODE_FAIL)

    counts = seed_demo_data(services.store, services.api_keys)
    for kind, count in counts.items():
        console.print(f"[green]✓[/] Inserted {count} {kind.replace('_', ' ')}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to listen on"),
):
    """Run the HTTP endpoints."""
    import uvicorn

    from cyberkey.api.app import create_app

    uvicorn.run(create_app(_load()), host=host, port=port, log_config=None)


if __name__ == "__main__":
    app()
