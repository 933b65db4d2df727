"""Command-line interface for genro-mail-relay.

Usage:
    mail-relay serve --config /etc/mail-relay/config.ini
    mail-relay serve --webhook-url https://app.example.com/inbound --auth-pass secret
    mail-relay check-config --config config.ini
    mail-relay route user@example.com --config config.ini
    mail-relay send-test localhost:2525 --from alice@example.org --to bob@example.com

Every ``serve`` option may also be given through a ``MAIL_RELAY_*``
environment variable; command-line values win.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Any, Optional

import aiosmtplib
import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config_loader import load_config
from .errors import ConfigError, PolicyRejection
from .logger import configure_logging
from .models import RelayConfig
from .routing import resolve_recipient

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def _load(config_path: Optional[str], **kwargs: Any) -> RelayConfig:
    try:
        return load_config(config_path, **kwargs)
    except ConfigError as exc:
        print_error(str(exc))
        sys.exit(1)


def parse_host_port(value: str, default_port: int = 25) -> tuple[str, int]:
    """Split ``host[:port]``; bracketed IPv6 literals are accepted."""
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port = rest.lstrip(":")
    elif value.count(":") == 1:
        host, port = value.split(":")
    else:
        host, port = value, ""
    if not port:
        return host, default_port
    if not port.isdigit():
        raise click.BadParameter(f"invalid port in {value!r}")
    return host, int(port)


@click.group()
@click.version_option(__version__, prog_name="mail-relay")
def main() -> None:
    """genro-mail-relay: inbound SMTP relay to HTTP webhooks."""


@main.command("serve")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), help="INI configuration file.")
@click.option("--host", "-h", default=None, help="Address to bind (default: 0.0.0.0).")
@click.option("--port", "-p", type=int, default=None, help="SMTP port (default: 25).")
@click.option("--hostname", default=None, help="Hostname announced in the SMTP greeting.")
@click.option("--max-size", type=int, default=None, help="Maximum message size in bytes.")
@click.option("--timeout", type=float, default=None, help="Webhook delivery timeout in seconds.")
@click.option("--webhook-url", default=None, help="Catch-all webhook for domains without a route.")
@click.option("--auth-user", default=None, help="Basic auth user for --webhook-url.")
@click.option("--auth-pass", default=None, help="Basic auth password for --webhook-url.")
@click.option("--no-spam-check", is_flag=True, help="Disable DNSBL and SpamAssassin checks.")
@click.option("--spam-host", default=None, help="SpamAssassin daemon host.")
@click.option("--spam-port", type=int, default=None, help="SpamAssassin daemon port.")
@click.option("--spam-threshold", type=float, default=None, help="Score at which mail is flagged.")
@click.option("--spam-reject", type=float, default=None, help="Score at which mail is rejected.")
@click.option("--api-port", type=int, default=None, help="Enable the status API on this port.")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def serve(
    config_path: Optional[str],
    host: Optional[str],
    port: Optional[int],
    hostname: Optional[str],
    max_size: Optional[int],
    timeout: Optional[float],
    webhook_url: Optional[str],
    auth_user: Optional[str],
    auth_pass: Optional[str],
    no_spam_check: bool,
    spam_host: Optional[str],
    spam_port: Optional[int],
    spam_threshold: Optional[float],
    spam_reject: Optional[float],
    api_port: Optional[int],
    verbose: bool,
) -> None:
    """Start the SMTP relay."""
    from .server import run

    configure_logging(level=os.environ.get("MAIL_RELAY_LOG_LEVEL", "INFO"), verbose=verbose)
    overrides = {
        "server": {
            "host": host,
            "port": port,
            "hostname": hostname,
            "max_size": max_size,
            "delivery_timeout": timeout,
        },
        "spam": {
            "enabled": False if no_spam_check else None,
            "host": spam_host,
            "port": spam_port,
            "flag_threshold": spam_threshold,
            "reject_threshold": spam_reject,
        },
        "api": {
            "enabled": True if api_port is not None else None,
            "port": api_port,
        },
    }
    config = _load(
        config_path,
        overrides=overrides,
        webhook_url=webhook_url,
        auth_user=auth_user,
        auth_pass=auth_pass,
    )
    try:
        run_async(run(config))
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        print_error(f"Cannot start server: {exc}")
        sys.exit(1)


@main.command("check-config")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), help="INI configuration file.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def check_config(config_path: Optional[str], as_json: bool) -> None:
    """Validate the configuration and print the route table."""
    config = _load(config_path)
    if as_json:
        console.print_json(
            config.model_dump_json(exclude={"api": {"token"}, "routes": {"__all__": {"target": {"auth_pass"}}}})
        )
        return

    table = Table(title="Routes")
    table.add_column("#", justify="right")
    table.add_column("Domains", style="cyan")
    table.add_column("Webhook")
    table.add_column("Auth")
    for index, route in enumerate(config.routes, start=1):
        credentials = route.target.credentials
        table.add_row(
            str(index),
            ", ".join(route.domains),
            route.target.url,
            credentials[0] if credentials else "-",
        )
    console.print(table)

    spam = config.spam
    if spam.enabled:
        console.print(
            f"Spam check: [green]enabled[/green] (spamd {spam.host}:{spam.port}, "
            f"flag {spam.flag_threshold}, reject {spam.reject_threshold})"
        )
        console.print(f"DNSBL zones: {', '.join(spam.dnsbl_zones) or '-'}")
    else:
        console.print("Spam check: [yellow]disabled[/yellow]")
    print_success("Configuration is valid")


@main.command("route")
@click.argument("address")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), help="INI configuration file.")
def route(address: str, config_path: Optional[str]) -> None:
    """Show which webhook would receive mail for ADDRESS."""
    config = _load(config_path)
    try:
        target = resolve_recipient(address, config.routes)
    except PolicyRejection as exc:
        print_error(f"{address}: {exc.reply}")
        sys.exit(1)
    console.print(f"{address} -> [cyan]{target.url}[/cyan]")


async def _send_test(host: str, port: int, sender: str, recipients: tuple[str, ...], subject: str) -> Any:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = ", ".join(recipients)
    message["Subject"] = subject
    message["Date"] = formatdate(localtime=True)
    message["Message-ID"] = make_msgid()
    message.set_content("Test message sent by mail-relay send-test.\n")
    return await aiosmtplib.send(
        message,
        hostname=host,
        port=port,
        sender=sender,
        recipients=list(recipients),
        start_tls=False,
        use_tls=False,
    )


@main.command("send-test")
@click.argument("server")
@click.option("--from", "sender", required=True, help="Envelope sender.")
@click.option("--to", "recipients", required=True, multiple=True, help="Recipient (repeatable).")
@click.option("--subject", default="mail-relay test", help="Message subject.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def send_test(server: str, sender: str, recipients: tuple[str, ...], subject: str, as_json: bool) -> None:
    """Send a test message through SERVER (host[:port])."""
    host, port = parse_host_port(server)
    try:
        errors, response = run_async(_send_test(host, port, sender, recipients, subject))
    except aiosmtplib.SMTPException as exc:
        print_error(f"{host}:{port} refused the message: {exc}")
        sys.exit(1)
    except OSError as exc:
        print_error(f"Cannot connect to {host}:{port}: {exc}")
        sys.exit(1)

    refused = {address: str(reply) for address, reply in errors.items()}
    if as_json:
        console.print_json(json.dumps({"response": response, "refused": refused}))
        return
    for address, reply in refused.items():
        console.print(f"[yellow]Refused[/yellow] {address}: {reply}")
    print_success(f"Sent to {host}:{port}: {response}")


if __name__ == "__main__":
    main()
