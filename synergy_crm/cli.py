"""
Command-line interface for the Synergy CRM.

Usage:
    synergy init-db                         Create the database tables
    synergy dispatch                        Send every follow-up email that is due
    synergy contacts --user me@example.com  List contacts
    synergy scan-card card.jpg --user ...   Capture a contact from a card photo
    synergy generate CONTACT_ID --notes ... Draft a follow-up email
    synergy schedule CONTACT_ID --at ...    Schedule a follow-up email
    synergy send CONTACT_ID ...             Send a follow-up email now
    synergy emails --user ...               List follow-up emails
"""

import logging
import mimetypes
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .database import get_db, init_db
from .errors import SynergyError
from .models import EmailStatus, User

console = Console()


def _notify(title: str, description: str, error: bool = False) -> None:
    style = "red" if error else "green"
    mark = "✗" if error else "✓"
    console.print(f"[{style}]{mark} {title}:[/{style}] {description}")


def _facade(user_email: str):
    from .facade import DataFacade

    with get_db() as db:
        user = db.query(User).filter(User.email == user_email.lower()).first()
        if not user:
            raise click.BadParameter(f"No user with email {user_email}", param_hint="--user")
        user_id = user.id

    facade = DataFacade(notifier=_notify)
    facade.set_user(user_id)
    return facade


def _read_body(body: str | None, body_file: str | None) -> str:
    if body_file:
        return Path(body_file).read_text(encoding="utf-8")
    if body:
        return body
    raise click.UsageError("Provide --body or --body-file")


user_option = click.option(
    "--user", "user_email", required=True, envvar="SYNERGY_USER",
    help="Email of the account to act as (or set SYNERGY_USER).",
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def main(verbose: bool) -> None:
    """
    Synergy CRM - follow up with the people you meet.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )


@main.command("init-db")
def init_db_command() -> None:
    """Create the database tables."""
    init_db()
    console.print("[green]✓ Database initialized[/green]")


@main.command("create-user")
@click.argument("email")
@click.option("--name", required=True, help="Full name used to sign emails.")
@click.password_option()
def create_user_command(email: str, name: str, password: str) -> None:
    """Create an account."""
    from .auth import create_user

    with get_db() as db:
        user, error = create_user(db, email, password, name)
    if error:
        raise click.ClickException(error)
    console.print(f"[green]✓ Created account for {email}[/green]")


@main.command()
def dispatch() -> None:
    """Send every scheduled follow-up email that is due (one pass)."""
    from .dispatch import DispatchEngine

    report = DispatchEngine().run_once()
    console.print(
        f"Dispatch finished: {report.sent} sent, {report.failed} failed, {report.skipped} skipped"
    )
    if not report.results:
        return

    table = Table(title="Dispatch results")
    table.add_column("Email")
    table.add_column("Recipient")
    table.add_column("Status")
    table.add_column("Reason", style="dim")
    for result in report.results:
        style = {"sent": "green", "failed": "red"}.get(result.status, "yellow")
        table.add_row(
            result.email_id,
            result.recipient or "-",
            f"[{style}]{result.status}[/{style}]",
            result.reason or "",
        )
    console.print(table)


@main.command()
@user_option
@click.option("--search", default=None, help="Filter by name, email or company.")
def contacts(user_email: str, search: str | None) -> None:
    """List contacts, newest first."""
    facade = _facade(user_email)

    table = Table(title="Contacts")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Email")
    table.add_column("Company")
    table.add_column("Tags")
    for contact in facade.contacts:
        haystack = " ".join(filter(None, [contact["name"], contact["email"], contact["company"]]))
        if search and search.lower() not in haystack.lower():
            continue
        table.add_row(
            contact["id"],
            contact["name"],
            contact["email"] or "-",
            contact["company"] or "-",
            ", ".join(contact["tags"]),
        )
    console.print(table)


@main.command("scan-card")
@user_option
@click.argument("image", type=click.Path(exists=True, dir_okay=False))
def scan_card(user_email: str, image: str) -> None:
    """Create a contact from a business card photo."""
    facade = _facade(user_email)
    content_type = mimetypes.guess_type(image)[0] or "image/jpeg"

    with console.status("Reading business card..."):
        try:
            contact, extraction = facade.scan_card(Path(image).read_bytes(), content_type)
        except SynergyError:
            raise click.Abort()

    lines = [f"{field}: {value or '-'}" for field, value in extraction.to_dict().items()]
    console.print(Panel("\n".join(lines), title=f"Contact {contact['id']}", border_style="blue"))


@main.command()
@user_option
@click.argument("contact_id")
@click.option("--notes", default="", help="Notes from your latest conversation.")
def generate(user_email: str, contact_id: str, notes: str) -> None:
    """Draft a follow-up email from the contact's synergy notes."""
    facade = _facade(user_email)

    with console.status("Generating email..."):
        try:
            text = facade.generate_email(contact_id, notes)
        except SynergyError:
            raise click.Abort()

    console.print(Panel(text, title="Generated email", border_style="green"))


@main.command()
@user_option
@click.argument("contact_id")
@click.option("--subject", required=True)
@click.option("--body", default=None)
@click.option("--body-file", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--at", "scheduled_date", required=True, help="ISO-8601 send time, e.g. 2026-11-02T09:00:00+00:00")
def schedule(
    user_email: str,
    contact_id: str,
    subject: str,
    body: str | None,
    body_file: str | None,
    scheduled_date: str,
) -> None:
    """Schedule a follow-up email."""
    facade = _facade(user_email)
    try:
        facade.schedule_email(contact_id, subject, _read_body(body, body_file), scheduled_date)
    except SynergyError:
        raise click.Abort()


@main.command()
@user_option
@click.argument("contact_id")
@click.option("--subject", required=True)
@click.option("--body", default=None)
@click.option("--body-file", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def send(
    user_email: str,
    contact_id: str,
    subject: str,
    body: str | None,
    body_file: str | None,
    yes: bool,
) -> None:
    """Send a follow-up email now."""
    facade = _facade(user_email)
    text = _read_body(body, body_file)

    if not yes and not click.confirm("⚠️  This will send a REAL email. Continue?"):
        console.print("[yellow]Aborted.[/yellow]")
        return

    with console.status("Sending..."):
        try:
            facade.send_email(contact_id, subject, text)
        except SynergyError:
            raise click.Abort()


@main.command()
@user_option
@click.option(
    "--status",
    type=click.Choice([s.value for s in EmailStatus]),
    default=None,
    help="Only show emails with this status.",
)
def emails(user_email: str, status: str | None) -> None:
    """List follow-up emails."""
    facade = _facade(user_email)

    table = Table(title="Follow-ups")
    table.add_column("ID", style="dim")
    table.add_column("To", style="cyan")
    table.add_column("Subject")
    table.add_column("Status")
    table.add_column("When")
    styles = {"sent": "green", "failed": "red", "scheduled": "yellow", "draft": "dim"}
    for email in facade.emails:
        if status and email["status"] != status:
            continue
        contact = facade.get_contact_by_id(email["contactId"])
        when = email["sentAt"] if email["status"] == "sent" else email["scheduledDate"]
        style = styles[email["status"]]
        table.add_row(
            email["id"],
            contact["name"] if contact else email["contactId"],
            email["subject"],
            f"[{style}]{email['status']}[/{style}]",
            when or "-",
        )
    console.print(table)


if __name__ == "__main__":
    main()
