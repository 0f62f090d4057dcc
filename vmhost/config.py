"""Agent configuration."""
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Agent settings loaded from environment variables."""

    # Agent identification
    agent_id: str = ""  # Auto-generated if not set
    agent_name: str = ""  # Defaults to hostname

    # Agent HTTP server
    host: str = "0.0.0.0"
    port: int = 8002

    # Controller event delivery
    controller_url: str = "http://localhost:8000"
    notify_timeout: float = 5.0
    notifications_enabled: bool = True

    # Hypervisor
    libvirt_uri: str = "qemu:///system"

    # Managed directory tree (qcow2/, iso/, xml/ live below it)
    root_dir: str = "/var/lib/vmhost"

    # Host sources
    sysfs_cpu_path: str = "/sys/devices/system/cpu"
    proc_cmdline_path: str = "/proc/cmdline"
    proc_meminfo_path: str = "/proc/meminfo"

    # External tools
    bootloader_tool: str = "grubby"
    command_timeout: float = 60.0

    # Lifecycle
    shutdown_timeout: float = 120.0
    shutdown_poll_interval: float = 0.3

    # Migration
    migration_sample_interval: float = 1.0

    # Creation defaults
    default_network: str = "default"
    graphics_listen: str = "0.0.0.0"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    class Config:
        env_prefix = "VMHOST_"

    @property
    def qcow2_dir(self) -> Path:
        return Path(self.root_dir) / "qcow2"

    @property
    def iso_dir(self) -> Path:
        return Path(self.root_dir) / "iso"

    @property
    def xml_dir(self) -> Path:
        return Path(self.root_dir) / "xml"


settings = Settings()
