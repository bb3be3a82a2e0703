"""Label handling for pool-managed GCE resources.

Labels are the only ownership mechanism: a VM belongs to a pool because it
carries ``pool=<name>``, a disk or snapshot belongs to a VM because it carries
``vm=<name>``. This module builds label sets, renders the compute API filter
expressions that select resources by label, and decides which resources are
exempt from the purge sweep.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

POOL = "pool"
VM = "vm"
SNAPSHOT_NAME = "snapshot_name"
DISKNAME = "diskname"
BOOT = "boot"


@dataclass
class Labels:
    """Label set with the keys gcepool relies on.

    Keys not known here are kept in ``extra`` and written back untouched.
    """
    pool: Optional[str] = None
    vm: Optional[str] = None
    snapshot_name: Optional[str] = None
    diskname: Optional[str] = None
    boot: Optional[bool] = None
    extra: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, labels: Optional[Mapping[str, str]]) -> "Labels":
        labels = dict(labels or {})
        boot = labels.pop(BOOT, None)
        return cls(
            pool=labels.pop(POOL, None),
            vm=labels.pop(VM, None),
            snapshot_name=labels.pop(SNAPSHOT_NAME, None),
            diskname=labels.pop(DISKNAME, None),
            # label values are strings, only the literal "true" marks a boot disk
            boot=None if boot is None else boot == "true",
            extra=labels,
        )

    def to_dict(self) -> Dict[str, str]:
        result = dict(self.extra)
        for key in (POOL, VM, SNAPSHOT_NAME, DISKNAME):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.boot is not None:
            result[BOOT] = "true" if self.boot else "false"
        return result


def label_filter(**labels: str) -> str:
    """Conjunction of ``(labels.K = V)`` clauses, in keyword order."""
    return " AND ".join(f"(labels.{key} = {value})" for key, value in labels.items())


def unconfigured_pool_filter(pool_names: Iterable[str]) -> str:
    """Select resources whose pool label is not a configured pool, or missing."""
    clauses = [f"(labels.{POOL} != {name})" for name in pool_names]
    missing = f"-labels.{POOL}:*"
    if not clauses:
        return missing
    return " AND ".join(clauses) + f" OR {missing}"


def should_ignore(labels: Optional[Mapping[str, str]], allow_list: Optional[List[str]]) -> bool:
    """Return True when a resource is exempt from the purge sweep.

    ``allow_list`` entries are pool names, the empty string (exempts resources
    without a pool label) or ``key=value`` label tokens. ``None`` exempts
    nothing.
    """
    if allow_list is None:
        return False

    # labels cannot hold uppercase characters
    allowed = [entry.lower() for entry in allow_list]
    labels = labels or {}

    if POOL in labels and labels[POOL] in allowed:
        return True
    if "" in allowed and POOL not in labels:
        return True
    for key, value in labels.items():
        if f"{key}={value}" in allowed:
            return True
    return False
