from rich.text import Text

__version__ = "0.1.0"

APP_DESCRIPTION = "Run test and bench executables on attached iOS and Android devices"


def get_banner_text() -> Text:
    return Text("dinghy", style="bold cyan")
