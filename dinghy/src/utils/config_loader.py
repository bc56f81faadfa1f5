import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import toml
from dotenv import load_dotenv

from dinghy.src.core.errors import ConfigError

ENV_PREFIX = "DINGHY_"


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    env_path = os.environ.get("DINGHY_CONFIG")
    if env_path:
        return Path(env_path)
    return Path.home() / ".dinghy" / "config.toml"


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load configuration from TOML file."""
    config_path = path or get_config_path()
    if not config_path.exists():
        return {}

    try:
        return toml.load(config_path)
    except (toml.TomlDecodeError, OSError) as e:
        raise ConfigError(f"Failed to load config {config_path}: {e}")


@dataclass
class Settings:
    """Runtime settings, from config.toml and DINGHY_* environment variables"""

    profiles_dir: Path = Path.home() / "Library" / "MobileDevice" / "Provisioning Profiles"
    package_cache_dir: Optional[Path] = None  # Set to keep signed packages between runs
    minimum_os_version: str = "9.0"
    default_timeout: Optional[float] = None  # None = wait for the device forever
    args_via_env: Union[bool, str] = "auto"  # "auto" = only where arguments get lost
    codesign_path: str = "codesign"
    security_path: str = "security"
    ios_deploy_path: str = "ios-deploy"
    idevice_id_path: str = "idevice_id"
    ideviceinfo_path: str = "ideviceinfo"
    adb_path: str = "adb"
    android_remote_dir: str = "/data/local/tmp/dinghy"
    drain_grace: float = 5.0
    poll_interval: float = 0.1

    def __post_init__(self):
        self.profiles_dir = Path(self.profiles_dir).expanduser()
        if self.package_cache_dir is not None:
            self.package_cache_dir = Path(self.package_cache_dir).expanduser()
        self.args_via_env = _parse_args_via_env(self.args_via_env)
        self.default_timeout = parse_timeout(self.default_timeout)
        for name in ("drain_grace", "poll_interval"):
            value = _parse_float(name, getattr(self, name))
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
            setattr(self, name, value)


def _parse_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}")


def parse_timeout(value: Any, name: str = "default_timeout") -> Optional[float]:
    """Seconds to wait for a device process; 0, "none" and "off" mean no limit"""
    if value is None or value == "" or str(value).strip().lower() in ("none", "off"):
        return None
    timeout = _parse_float(name, value)
    if timeout < 0:
        raise ConfigError(f"{name} must not be negative, got {timeout:g}")
    return timeout or None


def _parse_args_via_env(value: Any) -> Union[bool, str]:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text == "auto":
        return "auto"
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"args_via_env must be true, false or auto, got {value!r}")


def load_settings(path: Optional[Path] = None, env_file: bool = True) -> Settings:
    """Build Settings from the [dinghy] table of the config file and the environment"""
    if env_file:
        load_dotenv()

    config = load_config(path)
    values = dict(config.get("dinghy", {}))

    known = {f.name for f in fields(Settings)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"Unknown settings in config: {', '.join(sorted(unknown))}")

    # Environment wins over the file
    for name in known:
        env_value = os.environ.get(ENV_PREFIX + name.upper())
        if env_value is not None:
            values[name] = env_value

    return Settings(**values)
