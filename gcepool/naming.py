"""Deterministic names for pool-managed disks and snapshots."""
import re

# GCE resource names must be RFC1035 compliant
_RFC1035_NAME = re.compile(r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$")


def next_disk_name(vm_name: str, existing_disk_count: int) -> str:
    """Name for the next disk of a VM; index 0 is the boot disk.

    The index is the current attached-disk count, not a counter, so detaching
    a middle disk and adding a new one can reuse an existing name.
    """
    return f"{vm_name}-disk{existing_disk_count}"


def snapshot_name(logical_name: str, disk_name: str) -> str:
    return f"{logical_name}-{disk_name}"


def disk_name_from_source(source: str) -> str:
    """Last path segment of a disk self link, e.g. .../zones/z/disks/vm1-disk0."""
    return source.rstrip("/").rsplit("/", 1)[-1]


def short_name(url: str) -> str:
    """Last path segment of a zone or machine type URL."""
    return disk_name_from_source(url) if url else url


def is_safe_name(name: str) -> bool:
    return bool(name) and _RFC1035_NAME.match(name) is not None
