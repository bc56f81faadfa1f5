from rich.table import Table

from dinghy.logger import get_console
from dinghy.src.core.errors import DinghyError
from dinghy.src.device.discovery import DeviceDiscovery
from dinghy.src.utils.config_loader import load_settings


def run_devices_command(args) -> int:
    """List attached devices of both families"""
    console = get_console()
    try:
        discovery = DeviceDiscovery(load_settings())
    except DinghyError as e:
        console.print(f"[red]Error:[/] {e}")
        return 1

    devices = discovery.list_devices()
    if not devices:
        console.print("[yellow]No devices attached[/]")
        return 0

    table = Table(title="Attached devices")
    table.add_column("Identifier")
    table.add_column("Name")
    table.add_column("Family")
    table.add_column("Arch")
    table.add_column("OS")
    for device in devices:
        table.add_row(
            device.identifier,
            device.name,
            device.family.value,
            device.arch or "?",
            device.os_version or "?",
        )
    console.print(table)
    return 0
