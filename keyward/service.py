"""
keyward - service

Entry points used by the CLI and by anything embedding keyward:

  KeyTrust.get_diff(host)            -> [DiffEntry]
  KeyTrust.apply(host, [login])      -> [ApplyResult]
  KeyTrust.diff_many([host])         -> [HostOutcome]   (concurrent)
  KeyTrust.apply_many({host: [login]}) -> [HostOutcome] (concurrent)

Hosts are independent: batches fan out over a bounded thread pool and every
host yields exactly one outcome, in input order. Within a host the steps are
sequential (agent check, report, diff, optional apply).
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Set

from keyward.apply import FAILED, ApplyResult, apply_host
from keyward.config import Settings
from keyward.errors import ConfigError, ConnectivityError, KeywardError
from keyward.inventory import Host, Inventory, open_inventory
from keyward.project import project_host
from keyward.reconcile import DiffEntry, reconcile
from keyward.transport import AgentClient, SSHTransport

log = logging.getLogger(__name__)


@dataclasses.dataclass
class HostOutcome:
    host: str
    entries: List[DiffEntry] = dataclasses.field(default_factory=list)
    results: List[ApplyResult] = dataclasses.field(default_factory=list)
    error: Optional[KeywardError] = None
    skipped: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(r.ok for r in self.results)


class BatchRun:
    """Cancellation handle for one batch.

    Hosts that have not started yet are reported as cancelled; ssh processes
    already running for a cancelled host are terminated. The agent replaces
    files with a single rename, so an interrupted host keeps either its old or
    its new key file.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._all = False
        self._hosts: Set[str] = set()
        self._transport: Optional[SSHTransport] = None

    def attach(self, transport) -> None:
        with self._lock:
            self._transport = transport
            pending_all, pending = self._all, set(self._hosts)
        if pending_all:
            transport.cancel()
        for name in pending:
            transport.cancel(name)

    def cancel(self, host_name: Optional[str] = None) -> None:
        with self._lock:
            if host_name is None:
                self._all = True
            else:
                self._hosts.add(host_name)
            transport = self._transport
        if transport is not None:
            transport.cancel(host_name)

    def cancelled(self, host_name: str) -> bool:
        with self._lock:
            return self._all or host_name in self._hosts


def run_batch(
    hosts: List[Host],
    work: Callable[[Host], HostOutcome],
    concurrency: int,
    batch: Optional[BatchRun] = None,
) -> List[HostOutcome]:
    batch = batch or BatchRun()

    def guarded(host: Host) -> HostOutcome:
        if host.disabled:
            return HostOutcome(host.name, skipped="host disabled")
        if batch.cancelled(host.name):
            return HostOutcome(host.name, error=ConnectivityError("cancelled", host=host.name))
        try:
            return work(host)
        except KeywardError as ex:
            if ex.host is None:
                ex.host = host.name
            log.warning("%s: %s", ex.target(), ex)
            return HostOutcome(host.name, error=ex)
        except Exception as ex:
            log.exception("%s: unexpected failure", host.name)
            return HostOutcome(host.name, error=KeywardError(repr(ex), host=host.name))

    if not hosts:
        return []
    with ThreadPoolExecutor(max_workers=max(1, min(concurrency, len(hosts)))) as pool:
        outcomes = list(pool.map(guarded, hosts))

    failed = sum(1 for o in outcomes if o.error is not None)
    log.info("batch done: %d host(s), %d failed", len(outcomes), failed)
    return outcomes


class KeyTrust:
    def __init__(
        self,
        settings: Settings,
        inventory: Optional[Callable[[], Inventory]] = None,
        transport: Optional[Callable[[Inventory], object]] = None,
    ) -> None:
        self.settings = settings
        self.load_inventory = inventory or open_inventory(settings.inventory)
        self.make_transport = transport or (lambda inv: SSHTransport(settings.ssh, inv))

    # ---- helpers

    def _client(self, inv: Inventory, batch: Optional[BatchRun] = None) -> AgentClient:
        transport = self.make_transport(inv)
        if batch is not None:
            batch.attach(transport)
        return AgentClient(transport, self.settings.agent)

    def _host(self, inv: Inventory, name: str) -> Host:
        host = inv.host(name)
        if host is None:
            raise ConfigError(f"Unknown host: {name}", host=name)
        return host

    def _select(self, inv: Inventory, names: Optional[List[str]]) -> List[Host]:
        if names is None:
            return inv.hosts()
        return [self._host(inv, n) for n in names]

    def diff_host(self, client: AgentClient, inv: Inventory, host: Host) -> List[DiffEntry]:
        client.ensure_agent(host)
        reports = client.get_ssh_keyfiles(host)
        projection = project_host(inv, host.name, self.settings.ssh.manager_key)
        known_keys = {k.key_base64: k.username for k in inv.keys}
        return reconcile(host.name, reports, projection, known_keys)

    # ---- collaborator interface

    def get_diff(self, host_name: str) -> List[DiffEntry]:
        inv = self.load_inventory()
        host = self._host(inv, host_name)
        if host.disabled:
            raise ConfigError(f"{host_name} is disabled", host=host_name)
        return self.diff_host(self._client(inv), inv, host)

    def apply(self, host_name: str, logins: List[str]) -> List[ApplyResult]:
        inv = self.load_inventory()
        host = self._host(inv, host_name)
        if host.disabled:
            return [
                ApplyResult(host_name, login, FAILED, "host disabled") for login in logins
            ]
        return apply_host(
            self._client(inv), inv, host, logins, self.settings.ssh.manager_key
        )

    # ---- batches

    def diff_many(
        self, host_names: Optional[List[str]] = None, batch: Optional[BatchRun] = None
    ) -> List[HostOutcome]:
        inv = self.load_inventory()
        hosts = self._select(inv, host_names)
        client = self._client(inv, batch)

        def work(host: Host) -> HostOutcome:
            return HostOutcome(host.name, entries=self.diff_host(client, inv, host))

        return run_batch(hosts, work, self.settings.concurrency, batch)

    def apply_many(
        self, selection: Dict[str, List[str]], batch: Optional[BatchRun] = None
    ) -> List[HostOutcome]:
        inv = self.load_inventory()
        hosts = self._select(inv, list(selection))
        client = self._client(inv, batch)
        manager_key = self.settings.ssh.manager_key

        def work(host: Host) -> HostOutcome:
            results = apply_host(client, inv, host, selection[host.name], manager_key)
            return HostOutcome(host.name, results=results)

        return run_batch(hosts, work, self.settings.concurrency, batch)
