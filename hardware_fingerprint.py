import hashlib
import logging
import platform
import socket
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import psutil

from config import settings

logger = logging.getLogger(__name__)

DEVICE_ID_LENGTH = 32

MACHINE_ID_FILES = (
    Path("/etc/machine-id"),
    Path("/var/lib/dbus/machine-id"),
)


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    # False when the fallback path was used; the id will not survive a restart.
    stable: bool = True


def _machine_id() -> str:
    for path in MACHINE_ID_FILES:
        try:
            value = path.read_text().strip()
        except OSError:
            continue
        if value:
            return value

    node = uuid.getnode()
    # getnode() sets the multicast bit when it had to invent a random value
    if (node >> 40) & 1:
        raise RuntimeError("no hardware MAC address available")
    return "{:012x}".format(node)


def _platform_system() -> str:
    return platform.system()


def _architecture() -> str:
    return platform.machine()


def _hostname() -> str:
    return socket.gethostname()


def _cpu_count() -> str:
    return str(psutil.cpu_count(logical=True))


SIGNALS = (
    ("machine_id", _machine_id),
    ("platform", _platform_system),
    ("arch", _architecture),
    ("hostname", _hostname),
    ("cpu_count", _cpu_count),
)


def _collect_signals() -> Tuple[List[str], List[str]]:
    values, missing = [], []
    for name, probe in SIGNALS:
        try:
            value = probe()
        except Exception as e:
            logger.warning("Device signal %s unavailable: %s", name, e)
            missing.append(name)
            continue
        if not value:
            missing.append(name)
            continue
        values.append(value)
    return values, missing


def _digest(composite: str, salt: str) -> str:
    return hashlib.sha256((composite + salt).encode("utf-8")).hexdigest()[:DEVICE_ID_LENGTH]


def compute_device_id(salt: Optional[str] = None) -> DeviceIdentity:
    """
    Derive a stable device fingerprint from local machine characteristics.

    If any signal is unavailable the remaining ones are combined with a
    random and time-based component. That id is flagged unstable: the same
    machine will look like a new device after a restart, which costs the
    user a slot until the old activation is deactivated or cleaned up.
    """
    salt = settings.DEVICE_FINGERPRINT_SALT if salt is None else salt
    values, missing = _collect_signals()

    if not missing:
        return DeviceIdentity(_digest("-".join(values), salt), stable=True)

    logger.warning(
        "Falling back to unstable device id (missing signals: %s)", ", ".join(missing)
    )
    values.extend([uuid.uuid4().hex, str(time.time_ns())])
    return DeviceIdentity(_digest("-".join(values), salt), stable=False)


def get_device_name() -> str:
    """Human readable label shown in the device list."""
    names = {"Windows": "Windows", "Darwin": "macOS", "Linux": "Linux"}
    system = platform.system()
    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = "Unknown Device"
    return f"{hostname} ({names.get(system, system or 'Unknown')} {platform.machine()})"


def get_system_info() -> Dict[str, object]:
    """
    Collect system information for diagnostics.
    """
    return {
        "os_platform": platform.system(),
        "os_release": platform.release(),
        "cpu_count": psutil.cpu_count(logical=True),
        "total_memory_gb": round(psutil.virtual_memory().total / (1024**3), 2),
        "hostname": platform.node(),
        "architecture": platform.machine()
    }
