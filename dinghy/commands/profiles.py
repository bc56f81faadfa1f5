from rich.table import Table

from dinghy.logger import get_console
from dinghy.src.core.errors import DinghyError, ResolutionError
from dinghy.src.core.models import Device, PlatformFamily
from dinghy.src.core.resolver import rank_candidates
from dinghy.src.signing.identity_store import KeychainIdentityStore
from dinghy.src.signing.provisioning_profile_reader import ProvisioningProfileReader
from dinghy.src.utils.config_loader import load_settings


def print_candidates(console, settings, profiles, app_id: str, device_id: str) -> int:
    """Show the identity/profile pairs the resolver would consider, best first"""
    identities = KeychainIdentityStore(settings.security_path).list_identities().identities
    device = Device(identifier=device_id, name=device_id, family=PlatformFamily.IOS, connection=device_id)
    try:
        candidates = rank_candidates(identities, profiles, device, app_id)
    except ResolutionError as e:
        console.print(f"[red]{e.stage.value}:[/] {e.detail}")
        return 1

    table = Table(title=f"Signing candidates for {app_id} on {device_id}")
    table.add_column("#")
    table.add_column("Identity")
    table.add_column("Profile")
    table.add_column("Match")
    table.add_column("Expires")
    for rank, candidate in enumerate(candidates, 1):
        table.add_row(
            str(rank),
            f"{candidate.identity.name} ({candidate.identity.fingerprint[:8]})",
            candidate.profile.name,
            "exact" if candidate.exact else "wildcard",
            f"{candidate.profile.expiration_date:%Y-%m-%d}",
        )
    console.print(table)
    return 0


def run_profiles_command(args) -> int:
    """List provisioning profiles, or rank them for an app id and device"""
    console = get_console()
    try:
        settings = load_settings()
        reader = ProvisioningProfileReader(settings.profiles_dir)
        listing = reader.list_profiles(args.directory)
        if args.app_id and args.device:
            return print_candidates(console, settings, listing.profiles, args.app_id, args.device)
    except DinghyError as e:
        console.print(f"[red]Error:[/] {e}")
        return 1

    table = Table(title="Provisioning profiles")
    table.add_column("Name")
    table.add_column("Application identifier")
    table.add_column("Team")
    table.add_column("Devices")
    table.add_column("Expires")
    for profile in listing.profiles:
        devices = "all" if profile.authorized_devices is None else str(len(profile.authorized_devices))
        expires = f"{profile.expiration_date:%Y-%m-%d}"
        table.add_row(
            profile.name,
            profile.application_identifier_pattern,
            profile.team_identifier,
            devices,
            f"[red]{expires} (expired)[/]" if profile.expired else expires,
        )
    console.print(table)

    for error in listing.errors:
        console.print(f"[yellow]Unreadable:[/] {error}")
    return 0
