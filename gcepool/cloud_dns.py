"""Cloud DNS A-record synchronization for pool VMs.

Records are created when a VM is created and removed when it is destroyed.
Cloud DNS intermittently answers ``conditionNotMet`` on a change that is
otherwise valid, so those changes are retried at a fixed interval.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from google.api_core import exceptions as api_exceptions
from google.cloud import dns

from . import logging_config

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_DNS)

RECORD_TYPE = "A"
TTL = 60


class CloudDns:
    """Create, replace and remove A records in one managed zone."""

    def __init__(self, project: str, dns_zone_resource_name: Optional[str],
                 client: Optional[dns.Client] = None, retry_interval: float = 5,
                 max_attempts: int = 30, sleep: Callable[[float], None] = time.sleep):
        self.project = project
        self.dns_zone_resource_name = dns_zone_resource_name
        self._client = client
        self.retry_interval = retry_interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    @property
    def client(self) -> dns.Client:
        if self._client is None:
            self._client = dns.Client(project=self.project)
        return self._client

    def _zone(self):
        if not self.dns_zone_resource_name:
            return None
        zone = self.client.zone(self.dns_zone_resource_name)
        zone.reload()
        return zone

    def _find_record(self, zone, fqdn: str):
        for record in zone.list_resource_record_sets():
            if record.name == fqdn and record.record_type == RECORD_TYPE:
                return record
        return None

    def _with_precondition_retry(self, action: str, fn) -> None:
        """Run ``fn``, retrying ``conditionNotMet``; give up quietly at the cap.

        DNS is best-effort: a VM whose record could not be written is still
        usable, so exhausting the retries is logged, not raised.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                fn()
                return
            except api_exceptions.PreconditionFailed as e:
                if attempt >= self.max_attempts:
                    logger.error("DNS %s failed after %d attempts: %s", action, attempt, e)
                    return
                logger.debug("DNS %s failed, retrying error: %s", action, e)
                self._sleep(self.retry_interval)

    def dns_create_or_replace(self, name: Optional[str], ip: Optional[str]) -> None:
        """Point ``name`` at ``ip``, replacing a stale record if one exists."""
        zone = self._zone()
        if zone is None or not name or not ip:
            return
        fqdn = f"{name}.{zone.dns_name}"

        def upsert():
            record = zone.resource_record_set(fqdn, RECORD_TYPE, TTL, [ip])
            changes = zone.changes()
            changes.add_record_set(record)
            try:
                changes.create()
                logger.debug("%s - %s DNS address added", changes.name, changes.status)
            except api_exceptions.Conflict:
                # DNS is only set up for new instances, an existing record is stale
                changes = zone.changes()
                stale = self._find_record(zone, fqdn)
                if stale is not None:
                    changes.delete_record_set(stale)
                changes.add_record_set(record)
                changes.create()
                logger.debug("%s - %s DNS address previously existed and was replaced",
                             changes.name, changes.status)

        self._with_precondition_retry("create", upsert)

    def dns_teardown(self, name: Optional[str]) -> None:
        """Remove the A record for ``name`` if there is one."""
        zone = self._zone()
        if zone is None or not name:
            return
        fqdn = f"{name}.{zone.dns_name}"

        def remove():
            record = self._find_record(zone, fqdn)
            if record is None:
                return
            changes = zone.changes()
            changes.delete_record_set(record)
            changes.create()
            logger.debug("%s - %s DNS address removed", changes.name, changes.status)

        self._with_precondition_retry("teardown", remove)
