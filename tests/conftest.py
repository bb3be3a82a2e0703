"""Shared fixtures: an in-memory compute service and a provider wired to it."""
import itertools
import re
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as api_exceptions
from google.cloud import compute_v1

from gcepool import config
from gcepool.cloud_dns import CloudDns
from gcepool.connection import ConnectionPool
from gcepool.provider import GceProvider

PROJECT = "dio-samuel-dev"
ZONE = "us-west1-b"
ZONE_URL = f"https://www.googleapis.com/compute/v1/projects/{PROJECT}/zones/{ZONE}"
TEMPLATE = "projects/debian-cloud/global/images/family/debian-9"
POOL = "debian-9"

_CLAUSE = re.compile(r"^\(labels\.(?P<key>[^ ]+) (?P<op>!?=) (?P<value>[^)]*)\)$")
_MISSING = re.compile(r"^-labels\.(?P<key>[^:]+):\*$")


def filter_matches(labels, expression: Optional[str]) -> bool:
    """Evaluate the subset of the compute filter grammar gcepool emits."""
    if not expression:
        return True
    labels = dict(labels or {})
    return any(_conjunction_matches(labels, part) for part in expression.split(" OR "))


def _conjunction_matches(labels: Dict[str, str], conjunction: str) -> bool:
    for clause in conjunction.split(" AND "):
        clause = clause.strip()
        missing = _MISSING.match(clause)
        if missing:
            if missing.group("key") in labels:
                return False
            continue
        m = _CLAUSE.match(clause)
        assert m, f"unsupported filter clause: {clause!r}"
        key, op, value = m.group("key"), m.group("op"), m.group("value")
        if op == "=" and labels.get(key) != value:
            return False
        # != never matches a resource that lacks the label
        if op == "!=" and (key not in labels or labels[key] == value):
            return False
    return True


class FakeCompute:
    """Stand-in for gcepool.connection.ComputeConnection backed by dicts.

    Mutations apply immediately and return operations whose status is
    ``operation_status``; every call is appended to ``calls``.
    """

    def __init__(self):
        self.instance_store: Dict[str, compute_v1.Instance] = {}
        self.disk_store: Dict[str, compute_v1.Disk] = {}
        self.snapshot_store: Dict[str, compute_v1.Snapshot] = {}
        self.calls: List[tuple] = []
        self.operation_status = compute_v1.Operation.Status.DONE
        self._ids = itertools.count(1)
        self._ips = itertools.count(2)

        self.instances = FakeInstancesClient(self)
        self.disks = FakeDisksClient(self)
        self.snapshots = FakeSnapshotsClient(self)
        self.zone_operations = FakeOperationsClient(self, "zone_operations")
        self.global_operations = FakeOperationsClient(self, "global_operations")

    # helpers for tests

    def record(self, client: str, method: str, **kwargs):
        self.calls.append((client, method, kwargs))

    def calls_to(self, client: str, method: str) -> List[dict]:
        return [kwargs for c, m, kwargs in self.calls if c == client and m == method]

    def operation(self, operation_type: str, zonal: bool = True) -> compute_v1.Operation:
        fields = {
            "name": f"operation-{next(self._ids)}",
            "status": self.operation_status,
            "operation_type": operation_type,
        }
        if zonal:
            fields["zone"] = ZONE_URL
        return compute_v1.Operation(**fields)

    def disk_link(self, name: str) -> str:
        return f"{ZONE_URL}/disks/{name}"

    def add_disk(self, name: str, labels: Dict[str, str], **fields) -> compute_v1.Disk:
        disk = compute_v1.Disk(name=name, labels=labels, self_link=self.disk_link(name), **fields)
        self.disk_store[name] = disk
        return disk

    def add_instance(self, name: str, labels: Dict[str, str], disk_names=(),
                     boot_disk: Optional[str] = None) -> compute_v1.Instance:
        """Seed an instance with already-existing attached disks."""
        attached = []
        for disk_name in ([boot_disk] if boot_disk else []) + list(disk_names):
            if disk_name not in self.disk_store:
                disk_labels = {"vm": name}
                if "pool" in labels:
                    disk_labels["pool"] = labels["pool"]
                self.add_disk(disk_name, disk_labels)
            attached.append(compute_v1.AttachedDisk(
                source=self.disk_link(disk_name), device_name=disk_name,
                boot=disk_name == boot_disk, auto_delete=True,
            ))
        instance = compute_v1.Instance(
            name=name,
            labels=labels,
            disks=attached,
            status="RUNNING",
            zone=ZONE_URL,
            label_fingerprint="fp-0",
            network_interfaces=[compute_v1.NetworkInterface(network_i_p=f"10.0.0.{next(self._ips)}")],
        )
        self.instance_store[name] = instance
        return instance

    def add_snapshot(self, name: str, labels: Dict[str, str]) -> compute_v1.Snapshot:
        snapshot = compute_v1.Snapshot(
            name=name, labels=labels,
            self_link=f"https://www.googleapis.com/compute/v1/projects/{PROJECT}/global/snapshots/{name}",
        )
        self.snapshot_store[name] = snapshot
        return snapshot


def _not_found(kind: str, name: str):
    return api_exceptions.NotFound(f"The resource '{kind}/{name}' was not found")


class FakeInstancesClient:
    def __init__(self, compute: FakeCompute):
        self.compute = compute

    def get(self, project, zone, instance):
        self.compute.record("instances", "get", project=project, zone=zone, instance=instance)
        if instance not in self.compute.instance_store:
            raise _not_found("instances", instance)
        return self.compute.instance_store[instance]

    def list(self, request):
        self.compute.record("instances", "list", request=request)
        return [i for i in self.compute.instance_store.values() if filter_matches(i.labels, request.filter)]

    def insert_unary(self, project, zone, instance_resource):
        self.compute.record("instances", "insert", project=project, zone=zone,
                            instance_resource=instance_resource)
        params = instance_resource.disks[0].initialize_params
        boot_name = params.disk_name
        self.compute.add_disk(boot_name, dict(params.labels), source_image=params.source_image)
        self.compute.add_instance(instance_resource.name, dict(instance_resource.labels),
                                  boot_disk=boot_name)
        return self.compute.operation("insert")

    def delete_unary(self, project, zone, instance):
        self.compute.record("instances", "delete", project=project, zone=zone, instance=instance)
        removed = self.compute.instance_store.pop(instance, None)
        if removed is None:
            raise _not_found("instances", instance)
        for attached in removed.disks:
            if attached.auto_delete:
                self.compute.disk_store.pop(attached.source.rsplit("/", 1)[-1], None)
        return self.compute.operation("delete")

    def attach_disk_unary(self, project, zone, instance, attached_disk_resource):
        self.compute.record("instances", "attach_disk", project=project, zone=zone,
                            instance=instance, attached_disk_resource=attached_disk_resource)
        vm = self.compute.instance_store[instance]
        disk_name = attached_disk_resource.source.rsplit("/", 1)[-1]
        vm.disks = list(vm.disks) + [compute_v1.AttachedDisk(
            source=attached_disk_resource.source, device_name=disk_name,
            boot=attached_disk_resource.boot, auto_delete=attached_disk_resource.auto_delete,
        )]
        return self.compute.operation("attachDisk")

    def detach_disk_unary(self, project, zone, instance, device_name):
        self.compute.record("instances", "detach_disk", project=project, zone=zone,
                            instance=instance, device_name=device_name)
        vm = self.compute.instance_store[instance]
        vm.disks = [d for d in vm.disks if d.device_name != device_name]
        return self.compute.operation("detachDisk")

    def stop_unary(self, project, zone, instance):
        self.compute.record("instances", "stop", project=project, zone=zone, instance=instance)
        self.compute.instance_store[instance].status = "TERMINATED"
        return self.compute.operation("stop")

    def start_unary(self, project, zone, instance):
        self.compute.record("instances", "start", project=project, zone=zone, instance=instance)
        self.compute.instance_store[instance].status = "RUNNING"
        return self.compute.operation("start")

    def set_labels_unary(self, project, zone, instance, instances_set_labels_request_resource):
        request = instances_set_labels_request_resource
        self.compute.record("instances", "set_labels", project=project, zone=zone,
                            instance=instance, request=request)
        vm = self.compute.instance_store[instance]
        if request.label_fingerprint != vm.label_fingerprint:
            raise api_exceptions.PreconditionFailed("Labels fingerprint either invalid or resource labels have changed")
        vm.labels = dict(request.labels)
        vm.label_fingerprint = f"fp-{next(self.compute._ids)}"
        return self.compute.operation("setLabels")


class FakeDisksClient:
    def __init__(self, compute: FakeCompute):
        self.compute = compute

    def get(self, project, zone, disk):
        self.compute.record("disks", "get", project=project, zone=zone, disk=disk)
        if disk not in self.compute.disk_store:
            raise _not_found("disks", disk)
        return self.compute.disk_store[disk]

    def list(self, request):
        self.compute.record("disks", "list", request=request)
        return [d for d in self.compute.disk_store.values() if filter_matches(d.labels, request.filter)]

    def insert_unary(self, project, zone, disk_resource):
        self.compute.record("disks", "insert", project=project, zone=zone, disk_resource=disk_resource)
        self.compute.add_disk(disk_resource.name, dict(disk_resource.labels),
                              source_snapshot=disk_resource.source_snapshot,
                              size_gb=disk_resource.size_gb)
        return self.compute.operation("insert")

    def delete_unary(self, project, zone, disk):
        self.compute.record("disks", "delete", project=project, zone=zone, disk=disk)
        if self.compute.disk_store.pop(disk, None) is None:
            raise _not_found("disks", disk)
        return self.compute.operation("delete")

    def create_snapshot_unary(self, project, zone, disk, snapshot_resource):
        self.compute.record("disks", "create_snapshot", project=project, zone=zone, disk=disk,
                            snapshot_resource=snapshot_resource)
        self.compute.add_snapshot(snapshot_resource.name, dict(snapshot_resource.labels))
        return self.compute.operation("createSnapshot")


class FakeSnapshotsClient:
    def __init__(self, compute: FakeCompute):
        self.compute = compute

    def list(self, request):
        self.compute.record("snapshots", "list", request=request)
        return [s for s in self.compute.snapshot_store.values() if filter_matches(s.labels, request.filter)]

    def delete_unary(self, project, snapshot):
        self.compute.record("snapshots", "delete", project=project, snapshot=snapshot)
        if self.compute.snapshot_store.pop(snapshot, None) is None:
            raise _not_found("snapshots", snapshot)
        return self.compute.operation("delete", zonal=False)


class FakeOperationsClient:
    def __init__(self, compute: FakeCompute, client_name: str):
        self.compute = compute
        self.client_name = client_name

    def wait(self, project, operation, zone=None):
        self.compute.record(self.client_name, "wait", project=project, zone=zone, operation=operation)
        fields = {"name": operation, "status": compute_v1.Operation.Status.DONE}
        if zone:
            fields["zone"] = ZONE_URL
        return compute_v1.Operation(**fields)


@pytest.fixture
def settings() -> config.Settings:
    """Two pools in the same zone served by the gce provider."""
    return config.parse_settings({
        "config": {"max_tries": 3, "retry_factor": 10},
        "providers": {
            "gce": {
                "project": PROJECT,
                "zone": ZONE,
                "network_name": "global/networks/default",
                "dns_zone_resource_name": "pool-zone",
                "connection_pool_timeout": 1,
            },
        },
        "pools": [
            {
                "name": POOL,
                "template": TEMPLATE,
                "machine_type": f"zones/{ZONE}/machineTypes/e2-micro",
                "size": 5,
            },
            {
                "name": "pool2",
                "template": TEMPLATE,
                "machine_type": f"zones/{ZONE}/machineTypes/e2-micro",
            },
        ],
    })


@pytest.fixture
def fake_compute() -> FakeCompute:
    return FakeCompute()


@pytest.fixture
def mock_dns() -> MagicMock:
    return MagicMock(spec=CloudDns)


@pytest.fixture
def gce(settings, fake_compute, mock_dns) -> GceProvider:
    """GceProvider whose connection pool hands out the fake compute service."""
    pool = ConnectionPool(size=2, timeout=1, connect=lambda: fake_compute)
    return GceProvider(settings, connection_pool=pool, dns=mock_dns)
