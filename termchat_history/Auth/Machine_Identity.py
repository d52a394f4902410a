# Machine_Identity.py
# Description: Stable per-machine identifier, derived once from host facts and cached on disk.
#
# Imports
import hashlib
import platform
import secrets
import socket
import time
from pathlib import Path
from typing import List, Optional
#
# 3rd-Party Imports
import psutil
from loguru import logger
#
# Local Imports
from ..models import Machine, utc_now
#
########################################################################################################################
#
# Functions:

SYSTEM_MACHINE_ID_PATHS = (
    "/etc/machine-id",
    "/var/lib/dbus/machine-id",
    "/sys/class/dmi/id/product_uuid",
)
PREFERRED_INTERFACES = ("eth0", "en0", "enp0s3", "wlan0", "wlp2s0")
_SKIPPED_INTERFACE_PREFIXES = ("lo", "docker", "veth", "br-", "virbr")
_NULL_MAC = "00:00:00:00:00:00"


def _mac_addresses(addresses) -> List[str]:
    return [
        addr.address.lower().replace("-", ":")
        for addr in addresses
        if addr.family == psutil.AF_LINK and addr.address and addr.address.replace("-", ":") != _NULL_MAC
    ]


def get_primary_mac_address() -> Optional[str]:
    """MAC of the first preferred interface, else of the first non-virtual one."""
    try:
        interfaces = psutil.net_if_addrs()
    except (OSError, psutil.Error) as e:
        logger.debug(f"Could not list network interfaces: {e}")
        return None
    for name in PREFERRED_INTERFACES:
        macs = _mac_addresses(interfaces.get(name, []))
        if macs:
            return macs[0]
    for name in sorted(interfaces):
        if name.startswith(_SKIPPED_INTERFACE_PREFIXES):
            continue
        macs = _mac_addresses(interfaces[name])
        if macs:
            return macs[0]
    return None


def get_system_machine_id(paths=SYSTEM_MACHINE_ID_PATHS) -> Optional[str]:
    for candidate in paths:
        try:
            content = Path(candidate).read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if content:
            return content
    return None


def generate_machine_id() -> str:
    """SHA-256 over hostname, primary MAC, system machine id (or a random fallback) and platform."""
    components = [socket.gethostname()]
    mac = get_primary_mac_address()
    if mac:
        components.append(mac)
    system_id = get_system_machine_id()
    if system_id:
        components.append(system_id)
    else:
        components.append(f"{int(time.time() * 1000)}-{secrets.token_hex(4)}")
    components.append(f"{platform.system().lower()}-{platform.machine().lower()}")
    return hashlib.sha256("-".join(components).encode("utf-8")).hexdigest()


class MachineIdentity:
    """
    Resolves this machine's id. The first call generates it and writes it to `id_file`; later
    calls (and later processes) read the cached value back, so the id never changes.
    """

    def __init__(self, id_file: Path):
        self.id_file = Path(id_file).expanduser()
        self._machine_id: Optional[str] = None

    def get_machine_id(self) -> str:
        if self._machine_id:
            return self._machine_id
        try:
            cached = self.id_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            cached = ""
        except OSError as e:
            logger.error(f"Error reading cached machine ID from {self.id_file}: {e}")
            cached = ""
        if cached:
            logger.debug(f"Machine ID loaded from cache: {cached}")
            self._machine_id = cached
            return cached

        machine_id = generate_machine_id()
        try:
            self.id_file.parent.mkdir(parents=True, exist_ok=True)
            self.id_file.write_text(machine_id, encoding="utf-8")
            logger.info(f"Generated machine ID {machine_id} and cached it at {self.id_file}")
        except OSError as e:
            logger.warning(f"Could not persist machine ID to {self.id_file}: {e}")
        self._machine_id = machine_id
        return machine_id

    def describe(self) -> Machine:
        now = utc_now()
        return Machine(machine_id=self.get_machine_id(), hostname=socket.gethostname(),
                       first_seen=now, last_seen=now)

#
# End of Machine_Identity.py
########################################################################################################################
