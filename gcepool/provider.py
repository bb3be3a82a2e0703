"""Pool lifecycle operations on Google Compute Engine.

This module defines an abstract ProviderInterface and the GceProvider
implementation. GceProvider turns pool operations (create, add disk,
snapshot, revert, destroy, purge) into ordered sequences of compute API calls,
waits for each resulting operation and keeps VMs, disks, snapshots and DNS
records consistent through labels alone. Nothing about remote resources is
kept between calls.
"""
from __future__ import annotations

import socket
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from google.api_core import exceptions as api_exceptions
from google.cloud import compute_v1

from . import logging_config
from .cloud_dns import CloudDns
from .config import PoolConfig, ProviderConfig, Settings
from .connection import ComputeConnection, ConnectionPool, connect_to_gce
from .errors import (
    RevertError,
    SnapshotExistsError,
    SnapshotNotFoundError,
    VmNotFoundError,
)
from .labels import Labels, label_filter, should_ignore, unconfigured_pool_filter
from .naming import disk_name_from_source, is_safe_name, next_disk_name, snapshot_name
from .operations import DEFAULT_RETRIES, DESTROY_RETRIES, wait_for_operation, wait_for_operations
from .schemas import VirtualMachine

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_PROVIDER)

SSH_PORT = 22


class ProviderInterface(ABC):
    """Abstract interface for pool providers.

    Implementations raise ConfigError for unknown pools and VmNotFoundError
    when an operation needs a VM that does not exist.
    """

    @abstractmethod
    def list_pool_members(self, pool_name: str) -> List[Dict[str, str]]:
        """Return ``{'name': ...}`` for every VM labeled with the pool."""

    @abstractmethod
    def get_vm(self, pool_name: str, vm_name: str) -> Optional[VirtualMachine]:
        """Return the VM record, or None if the VM does not exist."""

    @abstractmethod
    def create_vm(self, pool_name: str, vm_name: str) -> Optional[VirtualMachine]:
        """Create a VM from the pool template and return its record."""

    @abstractmethod
    def create_disk(self, pool_name: str, vm_name: str, size_gb: int) -> bool:
        """Create a blank disk of ``size_gb`` and attach it to the VM."""

    @abstractmethod
    def create_snapshot(self, pool_name: str, vm_name: str, new_snapshot_name: str) -> bool:
        """Snapshot every disk attached to the VM under one snapshot name."""

    @abstractmethod
    def revert_snapshot(self, pool_name: str, vm_name: str, snapshot_name: str) -> bool:
        """Replace the VM's disks with disks restored from a snapshot set."""

    @abstractmethod
    def destroy_vm(self, pool_name: str, vm_name: str) -> bool:
        """Delete the VM and every disk and snapshot labeled with it."""

    @abstractmethod
    def is_ready(self, pool_name: str, vm_name: str) -> bool:
        """Return True when the VM accepts connections on the SSH port."""

    @abstractmethod
    def purge_unconfigured_resources(self, allow_list: Optional[List[str]]) -> None:
        """Delete resources whose pool label is not a configured pool."""


class GceProvider(ProviderInterface):
    """Google Compute Engine implementation of ProviderInterface.

    - Every call checks a connection out of ``connection_pool`` for its whole
      duration.
    - Mutations return operations that are polled to completion, except the
      disk and snapshot deletions of the purge sweep.
    - Multi-step operations are not atomic: a failure midway leaves the
      remote state as it is and the caller retries the whole operation.
    """

    def __init__(self, settings: Settings, connection_pool: Optional[ConnectionPool] = None,
                 dns: Optional[CloudDns] = None, provider_name: str = "gce"):
        self.settings = settings
        self.provider_name = provider_name
        provider_config = self.provider_config

        if connection_pool is None:
            global_config = settings.config
            # enough connections for every pool or every concurrent task, at least 2
            default_size = max(len(self.provided_pools), global_config.task_limit, 2)
            size = provider_config.connection_pool_size or default_size
            connection_pool = ConnectionPool(
                size=size,
                timeout=provider_config.connection_pool_timeout,
                connect=lambda: connect_to_gce(global_config.max_tries, global_config.retry_factor),
            )
        self.connection_pool = connection_pool
        self.dns = dns or CloudDns(provider_config.project, provider_config.dns_zone_resource_name)

        logger.debug("GceProvider init: project=%s pools=%s dns_zone=%s",
                     self.project, self.provided_pools,
                     provider_config.dns_zone_resource_name or "none")

    @property
    def name(self) -> str:
        return "gce"

    # configuration

    @property
    def provider_config(self) -> ProviderConfig:
        return self.settings.provider(self.provider_name)

    @property
    def project(self) -> str:
        return self.provider_config.project

    @property
    def provided_pools(self) -> List[str]:
        return [pool.name for pool in self.settings.pools_for(self.provider_name)]

    def pool_config(self, pool_name: str) -> PoolConfig:
        return self.settings.pool(pool_name, self.provider_name)

    def zone(self, pool_name: str) -> Optional[str]:
        return self.pool_config(pool_name).zone or self.provider_config.zone

    def machine_type(self, pool_name: str) -> Optional[str]:
        return self.pool_config(pool_name).machine_type or self.provider_config.machine_type

    def network_name(self, pool_name: str) -> Optional[str]:
        return self.pool_config(pool_name).network_name or self.provider_config.network_name

    def subnetwork_name(self, pool_name: str) -> Optional[str]:
        return self.pool_config(pool_name).subnetwork_name or self.provider_config.subnetwork_name

    def _disk_type(self, pool_name: str) -> Optional[str]:
        disk_type = self.pool_config(pool_name).disk_type
        if disk_type and "/" not in disk_type:
            return f"zones/{self.zone(pool_name)}/diskTypes/{disk_type}"
        return disk_type

    # remote lookups

    def _get_instance(self, connection: ComputeConnection, pool_name: str,
                      vm_name: str) -> compute_v1.Instance:
        """Fetch an instance, translating a 404 into VmNotFoundError."""
        try:
            return connection.instances.get(
                project=self.project, zone=self.zone(pool_name), instance=vm_name
            )
        except api_exceptions.NotFound:
            raise VmNotFoundError(
                f"VM {vm_name} in pool {pool_name} does not exist for the provider {self.name}"
            )

    def _find_snapshots(self, connection: ComputeConnection, vm_name: str,
                        name: str) -> List[compute_v1.Snapshot]:
        request = compute_v1.ListSnapshotsRequest(
            project=self.project, filter=label_filter(vm=vm_name, snapshot_name=name)
        )
        return list(connection.snapshots.list(request=request))

    def _vm_record(self, instance: compute_v1.Instance, pool_name: str) -> VirtualMachine:
        labels = dict(instance.labels)
        ip = instance.network_interfaces[0].network_i_p if instance.network_interfaces else None
        return VirtualMachine(
            name=instance.name,
            hostname=instance.hostname or None,
            # the API does not expose which image a VM was built from
            template=self.pool_config(pool_name).template,
            poolname=labels.get("pool"),
            boottime=instance.creation_timestamp or None,
            status=instance.status or None,
            zone=instance.zone or None,
            machine_type=instance.machine_type or None,
            labels=labels,
            label_fingerprint=instance.label_fingerprint or None,
            ip=ip or None,
        )

    def _get_vm(self, connection: ComputeConnection, pool_name: str,
                vm_name: str) -> Optional[VirtualMachine]:
        try:
            instance = connection.instances.get(
                project=self.project, zone=self.zone(pool_name), instance=vm_name
            )
        except api_exceptions.NotFound:
            return None
        return self._vm_record(instance, pool_name)

    def _wait(self, connection: ComputeConnection, operation: compute_v1.Operation,
              pool_name: str, retries: int = DEFAULT_RETRIES) -> compute_v1.Operation:
        return wait_for_operation(connection, self.project, operation, retries=retries,
                                  pool_name=pool_name)

    # pool operations

    def list_pool_members(self, pool_name: str) -> List[Dict[str, str]]:
        zone = self.zone(pool_name)
        with self.connection_pool.connection() as connection:
            request = compute_v1.ListInstancesRequest(
                project=self.project, zone=zone, filter=label_filter(pool=pool_name)
            )
            return [{"name": instance.name} for instance in connection.instances.list(request=request)]

    def get_vm(self, pool_name: str, vm_name: str) -> Optional[VirtualMachine]:
        self.pool_config(pool_name)
        with self.connection_pool.connection() as connection:
            return self._get_vm(connection, pool_name, vm_name)

    def create_vm(self, pool_name: str, vm_name: str) -> Optional[VirtualMachine]:
        pool = self.pool_config(pool_name)
        if not is_safe_name(vm_name):
            raise ValueError(f"VM name {vm_name!r} is not a valid RFC1035 resource name")
        zone = self.zone(pool_name)
        labels = Labels(pool=pool_name, vm=vm_name).to_dict()

        init_params = {
            "disk_name": next_disk_name(vm_name, 0),
            "source_image": pool.template,
            "labels": labels,
        }
        disk_type = self._disk_type(pool_name)
        if disk_type:
            init_params["disk_type"] = disk_type
        boot_disk = compute_v1.AttachedDisk(
            auto_delete=True,
            boot=True,
            initialize_params=compute_v1.AttachedDiskInitializeParams(**init_params),
        )

        network_interface = compute_v1.NetworkInterface()
        if self.network_name(pool_name):
            network_interface.network = self.network_name(pool_name)
        if self.subnetwork_name(pool_name):
            network_interface.subnetwork = self.subnetwork_name(pool_name)

        instance = compute_v1.Instance(
            name=vm_name,
            machine_type=self.machine_type(pool_name),
            disks=[boot_disk],
            network_interfaces=[network_interface],
            labels=labels,
        )

        with self.connection_pool.connection() as connection:
            logger.info("[%s] Creating VM %s in %s", pool_name, vm_name, zone)
            operation = connection.instances.insert_unary(
                project=self.project, zone=zone, instance_resource=instance
            )
            self._wait(connection, operation, pool_name)
            vm = self._get_vm(connection, pool_name, vm_name)

        if vm is not None:
            self.dns.dns_create_or_replace(vm.name, vm.ip)
        return vm

    def create_disk(self, pool_name: str, vm_name: str, size_gb: int) -> bool:
        self.pool_config(pool_name)
        if size_gb <= 0:
            raise ValueError(f"Invalid disk size: {size_gb}GB (must be > 0)")
        zone = self.zone(pool_name)

        with self.connection_pool.connection() as connection:
            instance = self._get_instance(connection, pool_name, vm_name)
            # the boot disk is disk0, so a VM with only a boot disk gets disk1
            disk_name = next_disk_name(vm_name, len(instance.disks))
            disk = compute_v1.Disk(
                name=disk_name,
                size_gb=size_gb,
                labels=Labels(pool=pool_name, vm=vm_name).to_dict(),
            )
            disk_type = self._disk_type(pool_name)
            if disk_type:
                disk.type_ = disk_type

            logger.info("[%s] Creating disk %s (%dGB) for VM %s", pool_name, disk_name, size_gb, vm_name)
            operation = connection.disks.insert_unary(project=self.project, zone=zone, disk_resource=disk)
            self._wait(connection, operation, pool_name)
            new_disk = connection.disks.get(project=self.project, zone=zone, disk=disk_name)

            attached_disk = compute_v1.AttachedDisk(
                auto_delete=True, boot=False, source=new_disk.self_link
            )
            operation = connection.instances.attach_disk_unary(
                project=self.project, zone=zone, instance=instance.name,
                attached_disk_resource=attached_disk,
            )
            self._wait(connection, operation, pool_name)
        return True

    def create_snapshot(self, pool_name: str, vm_name: str, new_snapshot_name: str) -> bool:
        self.pool_config(pool_name)
        zone = self.zone(pool_name)

        with self.connection_pool.connection() as connection:
            instance = self._get_instance(connection, pool_name, vm_name)
            if self._find_snapshots(connection, vm_name, new_snapshot_name):
                raise SnapshotExistsError(
                    f"Snapshot {new_snapshot_name} for VM {vm_name} in pool {pool_name} "
                    f"already exists for the provider {self.name}"
                )

            operations = []
            for attached_disk in instance.disks:
                disk_name = disk_name_from_source(attached_disk.source)
                snapshot = compute_v1.Snapshot(
                    name=snapshot_name(new_snapshot_name, disk_name),
                    labels=Labels(
                        snapshot_name=new_snapshot_name,
                        vm=vm_name,
                        pool=pool_name,
                        diskname=disk_name,
                        boot=attached_disk.boot,
                    ).to_dict(),
                )
                logger.info("[%s] Snapshotting disk %s as %s", pool_name, disk_name, snapshot.name)
                operations.append(connection.disks.create_snapshot_unary(
                    project=self.project, zone=zone, disk=disk_name, snapshot_resource=snapshot
                ))
            wait_for_operations(connection, self.project, operations, pool_name=pool_name)
        return True

    def revert_snapshot(self, pool_name: str, vm_name: str, snapshot_name: str) -> bool:
        """Restore every disk of the VM from the snapshot set ``snapshot_name``.

        The VM is stopped, its disks are detached and deleted, new disks are
        created from the snapshots and attached, then the VM is started. A
        failure midway leaves the VM stopped with a partial disk set.
        """
        self.pool_config(pool_name)
        zone = self.zone(pool_name)

        with self.connection_pool.connection() as connection:
            instance = self._get_instance(connection, pool_name, vm_name)
            snapshots = self._find_snapshots(connection, vm_name, snapshot_name)
            if not snapshots:
                raise SnapshotNotFoundError(
                    f"Snapshot {snapshot_name} for VM {vm_name} in pool {pool_name} "
                    f"does not exist for the provider {self.name}"
                )
            attached_disks = list(instance.disks)
            if not attached_disks:
                raise RevertError(
                    f"No disk is currently attached to VM {vm_name} in pool {pool_name}, "
                    f"cannot revert snapshot"
                )

            logger.info("[%s] Reverting VM %s to snapshot %s", pool_name, vm_name, snapshot_name)
            operation = connection.instances.stop_unary(project=self.project, zone=zone, instance=vm_name)
            self._wait(connection, operation, pool_name)

            for attached_disk in attached_disks:
                operation = connection.instances.detach_disk_unary(
                    project=self.project, zone=zone, instance=vm_name,
                    device_name=attached_disk.device_name,
                )
                self._wait(connection, operation, pool_name)
                operation = connection.disks.delete_unary(
                    project=self.project, zone=zone, disk=disk_name_from_source(attached_disk.source)
                )
                self._wait(connection, operation, pool_name)

            for snapshot in snapshots:
                recorded = Labels.from_mapping(snapshot.labels)
                disk = compute_v1.Disk(
                    name=recorded.diskname,
                    source_snapshot=snapshot.self_link,
                    labels=Labels(pool=pool_name, vm=vm_name).to_dict(),
                )
                operation = connection.disks.insert_unary(project=self.project, zone=zone, disk_resource=disk)
                self._wait(connection, operation, pool_name)
                new_disk = connection.disks.get(project=self.project, zone=zone, disk=recorded.diskname)

                attached_disk = compute_v1.AttachedDisk(
                    auto_delete=True, boot=bool(recorded.boot), source=new_disk.self_link
                )
                operation = connection.instances.attach_disk_unary(
                    project=self.project, zone=zone, instance=vm_name,
                    attached_disk_resource=attached_disk,
                )
                self._wait(connection, operation, pool_name)

            operation = connection.instances.start_unary(project=self.project, zone=zone, instance=vm_name)
            self._wait(connection, operation, pool_name)
        return True

    def destroy_vm(self, pool_name: str, vm_name: str) -> bool:
        """Delete a VM, its DNS record and every disk and snapshot labeled with it.

        A VM that does not exist is treated as already deleted; the disk and
        snapshot sweep still runs so that a half-destroyed VM is finished off.
        """
        self.pool_config(pool_name)
        zone = self.zone(pool_name)

        with self.connection_pool.connection() as connection:
            try:
                connection.instances.get(project=self.project, zone=zone, instance=vm_name)
                existed = True
            except api_exceptions.NotFound:
                existed = False
                logger.debug("[%s] VM %s does not exist, treating as deleted", pool_name, vm_name)

            if existed:
                try:
                    operation = connection.instances.delete_unary(
                        project=self.project, zone=zone, instance=vm_name
                    )
                    # losing track of a delete is costly, poll it harder
                    self._wait(connection, operation, pool_name, retries=DESTROY_RETRIES)
                except api_exceptions.NotFound:
                    logger.debug("[%s] VM %s disappeared before delete", pool_name, vm_name)
                logger.info("[%s] Deleted VM %s", pool_name, vm_name)
                self.dns.dns_teardown(vm_name)

            disk_request = compute_v1.ListDisksRequest(
                project=self.project, zone=zone, filter=label_filter(vm=vm_name)
            )
            operations = [
                connection.disks.delete_unary(project=self.project, zone=zone, disk=disk.name)
                for disk in connection.disks.list(request=disk_request)
            ]
            wait_for_operations(connection, self.project, operations, pool_name=pool_name)

            snapshot_request = compute_v1.ListSnapshotsRequest(
                project=self.project, filter=label_filter(vm=vm_name)
            )
            operations = [
                connection.snapshots.delete_unary(project=self.project, snapshot=snapshot.name)
                for snapshot in connection.snapshots.list(request=snapshot_request)
            ]
            wait_for_operations(connection, self.project, operations, pool_name=pool_name)
        return True

    def is_ready(self, pool_name: str, vm_name: str, timeout: float = 5) -> bool:
        domain = self.settings.config.domain
        host = f"{vm_name}.{domain}" if domain else vm_name
        try:
            with socket.create_connection((host, SSH_PORT), timeout=timeout):
                pass
        except OSError as e:
            logger.debug("[%s] VM %s not ready: %s", pool_name, vm_name, e)
            return False
        return True

    def set_vm_labels(self, pool_name: str, vm_name: str, labels: Dict[str, str]) -> bool:
        """Merge ``labels`` into the VM's labels, e.g. to record who checked it out."""
        self.pool_config(pool_name)
        zone = self.zone(pool_name)

        with self.connection_pool.connection() as connection:
            instance = self._get_instance(connection, pool_name, vm_name)
            merged = dict(instance.labels)
            merged.update(labels)
            request = compute_v1.InstancesSetLabelsRequest(
                label_fingerprint=instance.label_fingerprint, labels=merged
            )
            operation = connection.instances.set_labels_unary(
                project=self.project, zone=zone, instance=vm_name,
                instances_set_labels_request_resource=request,
            )
            self._wait(connection, operation, pool_name)
        return True

    def purge_unconfigured_resources(self, allow_list: Optional[List[str]]) -> None:
        """Delete instances, disks and snapshots that belong to no configured pool.

        Instance deletions are awaited so the disk sweep of the same zone sees
        their auto-deleted disks gone. Disk and snapshot deletions are not
        awaited.
        """
        pool_names = self.provided_pools
        resource_filter = unconfigured_pool_filter(pool_names)
        zones = sorted({zone for zone in (self.zone(name) for name in pool_names) if zone})

        with self.connection_pool.connection() as connection:
            for zone in zones:
                request = compute_v1.ListInstancesRequest(
                    project=self.project, zone=zone, filter=resource_filter
                )
                for instance in connection.instances.list(request=request):
                    if should_ignore(instance.labels, allow_list):
                        logger.debug("Purge: skipping allow-listed instance %s", instance.name)
                        continue
                    logger.info("Purge: deleting unconfigured instance %s in %s", instance.name, zone)
                    operation = connection.instances.delete_unary(
                        project=self.project, zone=zone, instance=instance.name
                    )
                    wait_for_operation(connection, self.project, operation)

                request = compute_v1.ListDisksRequest(
                    project=self.project, zone=zone, filter=resource_filter
                )
                for disk in connection.disks.list(request=request):
                    if should_ignore(disk.labels, allow_list):
                        logger.debug("Purge: skipping allow-listed disk %s", disk.name)
                        continue
                    logger.info("Purge: deleting unconfigured disk %s in %s", disk.name, zone)
                    connection.disks.delete_unary(project=self.project, zone=zone, disk=disk.name)

            # snapshots are global resources
            request = compute_v1.ListSnapshotsRequest(project=self.project, filter=resource_filter)
            for snapshot in connection.snapshots.list(request=request):
                if should_ignore(snapshot.labels, allow_list):
                    logger.debug("Purge: skipping allow-listed snapshot %s", snapshot.name)
                    continue
                logger.info("Purge: deleting unconfigured snapshot %s", snapshot.name)
                connection.snapshots.delete_unary(project=self.project, snapshot=snapshot.name)
