from rich.table import Table

from dinghy.logger import get_console
from dinghy.src.core.errors import DinghyError
from dinghy.src.signing.identity_store import KeychainIdentityStore
from dinghy.src.utils.config_loader import load_settings


def run_identities_command(args) -> int:
    """List code signing identities from the keychain"""
    console = get_console()
    try:
        settings = load_settings()
        listing = KeychainIdentityStore(settings.security_path).list_identities()
    except DinghyError as e:
        console.print(f"[red]Error:[/] {e}")
        return 1

    table = Table(title="Signing identities")
    table.add_column("Fingerprint")
    table.add_column("Name")
    table.add_column("Team")
    table.add_column("Kind")
    table.add_column("Expires")
    for identity in listing.identities:
        expires = identity.certificate.not_after
        table.add_row(
            identity.fingerprint,
            identity.name,
            identity.team_identifier,
            identity.kind.value,
            f"{expires:%Y-%m-%d}" if expires else "?",
        )
    console.print(table)

    for error in listing.errors:
        console.print(f"[yellow]Unreadable:[/] {error}")
    return 0
