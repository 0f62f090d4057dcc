"""Live and cold migration of workloads between hosts.

Live migration is one blocking hypervisor call, run on a worker thread
while a sampler task polls the job's byte counters about once a second
and publishes progress. The call races an optional cancellation token;
on cancellation the hypervisor job is aborted and
:class:`MigrationCancelled` is raised. Each attempt publishes exactly one
outcome event: finished, failed or cancelled.

Cold migration is split between the two hosts: the source releases the
workload (destroy and undefine, disk kept) and returns what the
destination needs to define an equivalent workload on the same disk
once it has been transferred.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterator
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from vmhost import surgery
from vmhost.config import settings
from vmhost.domain_builder import host_passthrough_cpu, validate_cpu_description
from vmhost.errors import (
    ConflictError,
    MigrationCancelled,
    NotFoundError,
    PreconditionError,
    ValidationError,
    VMHostError,
)
from vmhost.hypervisor import (
    DESTROYABLE_STATES,
    Hypervisor,
    JobProgress,
    MigrationFlag,
    WorkloadState,
    open_hypervisor,
)
from vmhost.lifecycle import CreateOptions, CreateResult, LifecycleController
from vmhost.metrics import migrations_total, track_operation
from vmhost.notifications import EventKind, LoggingSink, NotificationSink, OperatorEvent

logger = logging.getLogger(__name__)

BASE_FLAGS = (
    MigrationFlag.PERSIST_DEST
    | MigrationFlag.UNDEFINE_SOURCE
    | MigrationFlag.PEER2PEER
    | MigrationFlag.TUNNELLED
    | MigrationFlag.AUTO_CONVERGE
    | MigrationFlag.ABORT_ON_ERROR
)


@dataclass
class SSHOptions:
    """SSH settings for the peer-to-peer connection to the destination.

    Rendered as libvirt remote-URI parameters on the destination URI.
    """

    identity_file: str = ""
    known_hosts_file: str = ""
    skip_host_key_check: bool = False
    extra_params: dict[str, str] = field(default_factory=dict)

    def params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.skip_host_key_check:
            params["no_verify"] = "1"
            if not self.known_hosts_file.strip():
                params["known_hosts"] = "/dev/null"
        if self.known_hosts_file.strip():
            params["known_hosts"] = self.known_hosts_file.strip()
        if self.identity_file.strip():
            params["keyfile"] = self.identity_file.strip()
        params.update(self.extra_params)
        return params

    def apply(self, uri: str) -> str:
        params = self.params()
        if not params:
            return uri
        parts = urlsplit(uri)
        query = dict(parse_qsl(parts.query))
        query.update(params)
        return urlunsplit(parts._replace(query=urlencode(query, safe="/")))


@dataclass
class MigrationProgress:
    percent: float | None = None
    memory_total: int = 0
    memory_processed: int = 0


@dataclass
class MigrationJob:
    """One migration attempt, owned by the call that runs it.

    The sampler and the transfer share the progress snapshot; both go
    through :meth:`record` and :meth:`progress`, which hold the lock.
    """

    workload: str
    dest_uri: str
    source_uri: str = field(default_factory=lambda: settings.libvirt_uri)
    live: bool = True
    timeout: float = 0
    ssh: SSHOptions = field(default_factory=SSHOptions)
    _progress: MigrationProgress = field(default_factory=MigrationProgress, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def validate(self) -> None:
        if not self.workload.strip():
            raise ValidationError("migration: workload name is required")
        if not self.dest_uri.strip():
            raise ValidationError("migration: destination URI is required")
        if not self.source_uri.strip():
            raise ValidationError("migration: source connection URI is required")
        if self.timeout < 0:
            raise ValidationError("migration: timeout must be non-negative")

    def destination(self) -> str:
        return self.ssh.apply(self.dest_uri.strip())

    def flags(self) -> MigrationFlag:
        return BASE_FLAGS | MigrationFlag.LIVE if self.live else BASE_FLAGS

    def record(self, sample: JobProgress) -> float | None:
        percent = sample.percent()
        with self._lock:
            self._progress = MigrationProgress(
                percent=percent if percent is not None else self._progress.percent,
                memory_total=sample.memory_total,
                memory_processed=sample.memory_processed,
            )
        return percent

    def progress(self) -> MigrationProgress:
        with self._lock:
            return replace(self._progress)


class MigrationRegistry:
    """In-flight live migrations keyed by workload name.

    At most one migration per workload; a second request is rejected.
    """

    def __init__(self):
        self._jobs: dict[str, tuple[MigrationJob, asyncio.Event]] = {}
        self._guard = threading.Lock()

    def register(self, job: MigrationJob) -> asyncio.Event:
        with self._guard:
            if job.workload in self._jobs:
                raise ConflictError(f"workload {job.workload} already has a migration in flight")
            token = asyncio.Event()
            self._jobs[job.workload] = (job, token)
            return token

    def release(self, workload: str) -> None:
        with self._guard:
            self._jobs.pop(workload, None)

    def get(self, workload: str) -> MigrationJob | None:
        with self._guard:
            entry = self._jobs.get(workload)
            return entry[0] if entry else None

    def cancel(self, workload: str) -> bool:
        with self._guard:
            entry = self._jobs.get(workload)
        if entry is None:
            return False
        entry[1].set()
        return True

    def __iter__(self) -> Iterator[MigrationJob]:
        with self._guard:
            return iter([job for job, _ in self._jobs.values()])


@dataclass
class ColdMigrationInfo:
    """What the destination needs to recreate a released workload."""

    name: str
    memory_mb: int
    vcpus: int
    network: str
    disk_path: str
    vnc_password: str = ""
    cpu_xml: str = ""

    def validate(self) -> None:
        if not self.name.strip():
            raise ValidationError("cold migration: workload name is required")
        if not self.disk_path.strip():
            raise ValidationError("cold migration: disk path is required")
        if self.memory_mb <= 0:
            raise ValidationError("cold migration: memory must be positive")
        if self.vcpus <= 0:
            raise ValidationError("cold migration: vcpus must be positive")
        if not self.network.strip():
            raise ValidationError("cold migration: network is required")


class MigrationEngine:
    def __init__(
        self,
        sink: NotificationSink | None = None,
        connect: Callable[[str], Hypervisor] = open_hypervisor,
        sample_interval: float | None = None,
    ):
        self.sink = sink or LoggingSink()
        self._connect = connect
        self.sample_interval = (
            settings.migration_sample_interval if sample_interval is None else sample_interval
        )

    async def _notify(self, kind: EventKind, job: MigrationJob, message: str = "", percent: float | None = None) -> None:
        try:
            await self.sink.notify(OperatorEvent(kind, job.workload, message=message, percent=percent))
        except Exception as e:
            logger.warning(f"Notification sink failed for {job.workload}: {e}")

    # ------------------------------------------------------------------
    # Blocking hypervisor calls (worker threads)
    # ------------------------------------------------------------------

    def _preflight_sync(self, job: MigrationJob) -> None:
        with self._connect(job.source_uri) as hv:
            state = hv.state(hv.lookup(job.workload))
        if job.live and state != WorkloadState.RUNNING:
            raise PreconditionError("live migration", job.workload, [WorkloadState.RUNNING.value], state.value)

    def _migrate_sync(self, job: MigrationJob) -> None:
        with self._connect(job.source_uri) as hv:
            hv.migrate(hv.lookup(job.workload), job.destination(), job.flags())

    def _progress_sync(self, job: MigrationJob) -> JobProgress | None:
        try:
            with self._connect(job.source_uri) as hv:
                return hv.job_progress(hv.lookup(job.workload))
        except VMHostError as e:
            logger.debug(f"Progress sample for {job.workload} failed: {e}")
            return None

    def _abort_sync(self, job: MigrationJob) -> None:
        with self._connect(job.source_uri) as hv:
            hv.abort_job(hv.lookup(job.workload))

    def _suspend_sync(self, job: MigrationJob) -> None:
        with self._connect(job.source_uri) as hv:
            hv.suspend(hv.lookup(job.workload))

    # ------------------------------------------------------------------
    # Live migration
    # ------------------------------------------------------------------

    async def _sample(self, job: MigrationJob) -> None:
        """Publish progress until cancelled.

        A live migration still running after ``job.timeout`` seconds has
        its guest paused so the remaining memory can converge.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        suspended = False
        while True:
            await asyncio.sleep(self.sample_interval)
            sample = await asyncio.to_thread(self._progress_sync, job)
            if sample is not None:
                percent = job.record(sample)
                if percent is not None:
                    await self._notify(EventKind.MIGRATION_PROGRESS, job, percent=percent)

            if job.live and job.timeout > 0 and not suspended and loop.time() - started >= job.timeout:
                suspended = True
                logger.warning(f"Migration of {job.workload} exceeded {job.timeout:g}s, pausing guest")
                try:
                    await asyncio.to_thread(self._suspend_sync, job)
                except VMHostError as e:
                    logger.warning(f"Could not pause {job.workload} after migration timeout: {e}")

    async def _abort_and_drain(self, job: MigrationJob, transfer: asyncio.Future) -> bool:
        """Abort the job and wait for the transfer call; True if it still succeeded."""
        try:
            await asyncio.to_thread(self._abort_sync, job)
            logger.info(f"Abort requested for migration of {job.workload}")
        except VMHostError as e:
            logger.warning(f"Abort of migration of {job.workload} failed: {e}")
        try:
            await transfer
        except VMHostError as e:
            logger.info(f"Migration call for {job.workload} ended after abort: {e}")
            return False
        return True

    async def _transfer(self, job: MigrationJob, cancel: asyncio.Event | None) -> None:
        loop = asyncio.get_running_loop()
        transfer = loop.run_in_executor(None, self._migrate_sync, job)
        waiters: list[asyncio.Future] = [transfer]
        cancel_wait = None
        if cancel is not None:
            cancel_wait = asyncio.ensure_future(cancel.wait())
            waiters.append(cancel_wait)

        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._abort_and_drain(job, transfer)
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if not transfer.done():
            if await self._abort_and_drain(job, transfer):
                logger.warning(f"Migration of {job.workload} completed before the abort took effect")
                return
            raise MigrationCancelled(f"migration of {job.workload} cancelled")
        transfer.result()

    async def preflight(self, job: MigrationJob) -> None:
        """Validate the job and check the workload state on the source host."""
        job.validate()
        await asyncio.to_thread(self._preflight_sync, job)

    async def migrate(self, job: MigrationJob, cancel: asyncio.Event | None = None) -> None:
        """Run a migration attempt to completion, failure or cancellation.

        Raises:
            ValidationError: invalid job parameters
            NotFoundError: unknown workload
            PreconditionError: live migration of a workload that is not running
            MigrationCancelled: the cancellation token fired first
            ExternalError: the hypervisor reported a failure
        """
        await self.preflight(job)

        mode = "live" if job.live else "offline"
        logger.info(f"Migrating {job.workload} to {job.dest_uri} ({mode})")
        await self._notify(EventKind.MIGRATION_STARTED, job, message=f"to {job.dest_uri}")

        sampler = asyncio.create_task(self._sample(job))
        outcome, message = EventKind.MIGRATION_FAILED, ""
        try:
            with track_operation(f"migrate_{mode}"):
                await self._transfer(job, cancel)
            outcome = EventKind.MIGRATION_FINISHED
        except (MigrationCancelled, asyncio.CancelledError):
            outcome, message = EventKind.MIGRATION_CANCELLED, "cancelled by caller"
            raise
        except Exception as e:
            message = str(e)
            raise
        finally:
            sampler.cancel()
            try:
                await sampler
            except asyncio.CancelledError:
                pass
            migrations_total.labels(mode=mode, outcome=outcome.value).inc()
            logger.info(f"Migration of {job.workload}: {outcome.value} {message}".rstrip())
            await self._notify(outcome, job, message=message)

    # ------------------------------------------------------------------
    # Cold migration
    # ------------------------------------------------------------------

    def cold_release(self, name: str, source_uri: str | None = None) -> ColdMigrationInfo:
        """Capture a workload's definition and drop it from this host.

        The disk image stays in place for out-of-band transfer.
        """
        with track_operation("cold_release"), self._connect(source_uri or settings.libvirt_uri) as hv:
            dom = hv.lookup(name)
            xml = hv.xml_description(dom, inactive=True)
            info = ColdMigrationInfo(
                name=name,
                memory_mb=surgery.memory_mib(xml),
                vcpus=surgery.vcpu_count(xml),
                network=surgery.network_name(xml),
                disk_path=surgery.disk_path(xml),
                vnc_password=surgery.vnc_password(xml),
                cpu_xml=surgery.cpu_description(xml),
            )
            info.validate()

            if hv.state(dom) in DESTROYABLE_STATES:
                hv.destroy(dom)
            hv.undefine(dom, cleanup=True)
        migrations_total.labels(mode="cold", outcome="released").inc()
        logger.info(f"Released {name} for cold migration (disk {info.disk_path})")
        return info

    def cold_adopt(self, info: ColdMigrationInfo, lifecycle: LifecycleController) -> CreateResult:
        """Define and start a released workload on this host."""
        info.validate()
        disk = Path(info.disk_path)
        if not disk.is_file():
            raise NotFoundError(f"cold migration: disk {disk} not present on this host")

        cpu_xml = info.cpu_xml.strip()
        if not cpu_xml:
            logger.warning(
                f"No CPU description captured for {info.name}, defaulting to host-passthrough"
            )
            cpu_xml = host_passthrough_cpu()
        cpu_xml = validate_cpu_description(cpu_xml)

        with track_operation("cold_adopt"):
            result = lifecycle.create(CreateOptions(
                name=info.name,
                memory_mb=info.memory_mb,
                vcpus=info.vcpus,
                disk=str(disk),
                network=info.network,
                vnc_password=info.vnc_password,
                cpu_xml=cpu_xml,
            ))
        migrations_total.labels(mode="cold", outcome="adopted").inc()
        return result
