"""Host environment descriptor consumed by prompts and the fallback planner."""

import os
import platform
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from taskpilot.logging import get_logger

log = get_logger(__name__)

OS_RELEASE_PATH = Path("/etc/os-release")


@dataclass(frozen=True)
class PackageManager:
    name: str
    install: str
    update: str
    upgrade: str = ""
    remove: str = ""


PACKAGE_MANAGERS: dict[str, PackageManager] = {
    "apt": PackageManager("apt", "apt-get install -y", "apt-get update", "apt-get upgrade -y", "apt-get remove -y"),
    "apk": PackageManager("apk", "apk add", "apk update", "apk upgrade", "apk del"),
    "dnf": PackageManager("dnf", "dnf install -y", "dnf makecache", "dnf upgrade -y", "dnf remove -y"),
    "yum": PackageManager("yum", "yum install -y", "yum makecache", "yum update -y", "yum remove -y"),
    "pacman": PackageManager("pacman", "pacman -S --noconfirm", "pacman -Sy", "pacman -Syu --noconfirm", "pacman -R --noconfirm"),
    "brew": PackageManager("brew", "brew install", "brew update", "brew upgrade", "brew uninstall"),
    "pkg": PackageManager("pkg", "pkg install -y", "pkg update", "pkg upgrade -y", "pkg uninstall -y"),
}

# Distribution id (from os-release) to its native package manager.
_DISTRO_PACKAGE_MANAGERS = {
    "alpine": "apk",
    "debian": "apt",
    "ubuntu": "apt",
    "fedora": "dnf",
    "rhel": "dnf",
    "centos": "yum",
    "arch": "pacman",
    "manjaro": "pacman",
}

# Probe order when the distribution gives no answer.
_PROBE_ORDER = ("apk", "apt", "dnf", "yum", "pacman", "brew", "pkg")


@dataclass(frozen=True)
class EnvironmentDescriptor:
    """What the agent knows about the machine it drives."""

    os: str
    package_manager: str
    install_command: str
    update_command: str
    system_context: str = ""
    extras: dict[str, str] = field(default_factory=dict)

    @classmethod
    def for_package_manager(cls, os_name: str, package_manager: str) -> "EnvironmentDescriptor":
        """Descriptor for a known package manager with a generated system context."""
        manager = PACKAGE_MANAGERS.get(package_manager)
        install = manager.install if manager else "install"
        update = manager.update if manager else "update"
        descriptor = cls(
            os=os_name,
            package_manager=package_manager,
            install_command=install,
            update_command=update,
        )
        return descriptor.with_context(render_system_context(descriptor))

    def with_context(self, system_context: str) -> "EnvironmentDescriptor":
        return EnvironmentDescriptor(
            os=self.os,
            package_manager=self.package_manager,
            install_command=self.install_command,
            update_command=self.update_command,
            system_context=system_context,
            extras=dict(self.extras),
        )

    def as_prompt_block(self) -> str:
        return self.system_context or render_system_context(self)


def read_os_release(path: Path = OS_RELEASE_PATH) -> dict[str, str]:
    """Parse ``/etc/os-release`` into a dict; missing file gives ``{}``."""
    values: dict[str, str] = {}
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return values
    for line in text.splitlines():
        if "=" not in line or line.lstrip().startswith("#"):
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def detect_package_manager(os_release: dict[str, str] | None = None) -> str:
    """Best-effort package manager detection; returns ``"unknown"`` when nothing matches."""
    if platform.system() == "Darwin":
        return "brew" if shutil.which("brew") else "unknown"

    os_release = os_release if os_release is not None else read_os_release()
    ids = [os_release.get("ID", "")] + os_release.get("ID_LIKE", "").split()
    for distro_id in ids:
        manager = _DISTRO_PACKAGE_MANAGERS.get(distro_id.lower())
        if manager == "dnf" and not shutil.which("dnf"):
            manager = "yum"
        if manager:
            return manager

    for name in _PROBE_ORDER:
        if shutil.which(name):
            return name
    return "unknown"


def render_system_context(descriptor: EnvironmentDescriptor) -> str:
    """Free-text system block injected verbatim into prompts."""
    lines = [
        "## System Information",
        f"- OS: {descriptor.os}",
        f"- Package manager: {descriptor.package_manager}",
        f"- Install command: `{descriptor.install_command} <package>`",
        f"- Update command: `{descriptor.update_command}`",
    ]
    for key, value in descriptor.extras.items():
        lines.append(f"- {key}: {value}")
    lines.append("")
    lines.append(
        "When generating commands, use the package manager commands for this system "
        "instead of generic ones."
    )
    return "\n".join(lines)


def detect_environment() -> EnvironmentDescriptor:
    """Describe the current host.

    Never raises; unknown values are reported as ``"unknown"``.
    """
    os_release = read_os_release()
    system = platform.system() or "unknown"
    if system == "Linux":
        os_name = os_release.get("PRETTY_NAME") or os_release.get("NAME") or "Linux"
    elif system == "Darwin":
        os_name = f"macOS {platform.mac_ver()[0]}".strip()
    else:
        os_name = f"{system} {platform.release()}".strip()

    package_manager = detect_package_manager(os_release)
    manager = PACKAGE_MANAGERS.get(package_manager)
    extras = {
        "Architecture": platform.machine() or "unknown",
        "Shell": Path(os.environ.get("SHELL", "sh")).name,
    }
    descriptor = EnvironmentDescriptor(
        os=os_name,
        package_manager=package_manager,
        install_command=manager.install if manager else "install",
        update_command=manager.update if manager else "update",
        extras=extras,
    )
    log.debug("Detected environment", os=os_name, package_manager=package_manager)
    return descriptor.with_context(render_system_context(descriptor))
