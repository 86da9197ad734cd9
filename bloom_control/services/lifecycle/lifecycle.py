"""
Lifecycle Orchestrator - drives the server state machine.

Commands (start, stop, task, sync) and instance webhooks (ready,
heartbeat, task-complete, idle-timeout) are reconciled here into one
lifecycle. Every write to the server state is a compare-and-swap against
the state read at the start of the operation, and every external side
effect (provision, delete, DNS, instance messaging) is wrapped so a
failure never parks the server in a transient state.
"""

import asyncio
from datetime import timedelta
from typing import Optional, Tuple

from loguru import logger

from ...clients.base import (
    BaseProvisioner,
    BaseDnsUpdater,
    BaseInstanceMessenger,
    ProvisionRequest
)
from ...core.config import Settings
from ...core.exceptions import (
    StateConflictError,
    CostLimitExceededError,
    TaskRejectedError,
    ProvisioningError,
    InstanceUnavailableError,
    InvalidTaskTransitionError,
    RecordNotFoundError
)
from ...core.initializer import RegionCatalog
from ...middleware.monitoring import record_transition, record_external_failure
from ...models.enums import (
    ServerState,
    Region,
    ShutdownReason,
    TaskStatus,
    TaskMode,
    ConfigKey
)
from ...models.internal import ServerStateRecord, TaskRecord, Repository
from ...models.requests import ConfigUpdateRequest
from ...models.responses import (
    StartResponse,
    StopResponse,
    StatusResponse,
    CostInfo,
    TaskResponse,
    ProjectsResponse,
    SyncResponse,
    SessionSummary,
    MonthInfo,
    HistoryResponse,
    ConfigResponse,
    WebhookAck
)
from ...utils.async_time import get_utc_now, get_iso_timestamp, get_month_key, seconds_between, format_duration
from ...utils.identifiers import generate_session_id, generate_task_id
from ..admission.admission import AdmissionService
from ..defense.defense import DefenseService
from ..ledger.ledger import Ledger
from .transitions import Trigger, next_state, can_transition


# Conservative spend estimate committed at start
START_COST_ESTIMATE_HOURS = 1.0


def calculate_cost(duration_seconds: int, hourly_rate: float) -> float:
    """Session cost in USD, rounded to 4 decimals."""
    return round(duration_seconds / 3600 * hourly_rate, 4)


class LifecycleOrchestrator:
    """
    State machine over the ledger.

    Holds no state of its own between calls: everything shared lives in
    the ledger and the admission counters.
    """

    def __init__(
        self,
        ledger: Ledger,
        admission: AdmissionService,
        defense: DefenseService,
        provisioner: BaseProvisioner,
        dns: BaseDnsUpdater,
        instance: BaseInstanceMessenger,
        region_catalog: RegionCatalog,
        settings: Settings
    ):
        self.ledger = ledger
        self.admission = admission
        self.defense = defense
        self.provisioner = provisioner
        self.dns = dns
        self.instance = instance
        self.regions = region_catalog
        self.settings = settings

    async def _transition(
        self,
        current: ServerStateRecord,
        trigger: Trigger,
        **updates
    ) -> ServerStateRecord:
        """Resolve `trigger` from the state we read and write it with a compare-and-swap."""
        target = next_state(current.state, trigger)
        record = await self.ledger.compare_and_set(
            current.state,
            expected_session_id=current.session_id,
            state=target,
            **updates
        )
        record_transition(current.state, target)
        logger.info(f"Server {current.state.value} -> {target.value} ({trigger.value}, session {record.session_id})")
        return record

    async def _idle_timeout(self) -> int:
        value = await self.ledger.get_config(ConfigKey.IDLE_TIMEOUT.value)
        return int(value) if value else self.settings.default_idle_timeout

    async def _default_region(self) -> Region:
        value = await self.ledger.get_config(ConfigKey.DEFAULT_REGION.value)
        return Region(value or self.settings.default_region)

    def _hourly_rate(self, region: Optional[Region]) -> float:
        if region is None:
            return 0.0
        return self.regions.hourly_rate(region)

    def _terminal_url(self) -> str:
        return f"https://{self.settings.terminal_host or self.settings.dns_record_name}"

    # Commands

    async def start(self, region: Optional[Region], task: Optional[str], caller_id: str, auto_shutdown: bool = True) -> StartResponse:
        """
        Provision the instance and open a session.

        Raises:
            StateConflictError: A session is already active, or it was stopped while provisioning
            CostLimitExceededError: Starting would exceed the caller's daily spend ceiling
            TaskRejectedError: The initial task failed input validation
            ProvisioningError: The provider call failed; state was reset to OFFLINE
        """
        current = await self.ledger.get_server_state()
        if current.state != ServerState.OFFLINE:
            raise StateConflictError(f"Server is already {current.state.value} (session {current.session_id})")

        region = region or await self._default_region()
        spec = self.regions.get(region)
        estimate = spec.hourly_rate * START_COST_ESTIMATE_HOURS

        cost_check = await self.admission.check_cost_limit(caller_id, estimate)
        if not cost_check.allowed:
            raise CostLimitExceededError(cost_check.message, cost_check.current_spend, cost_check.limit)

        protected = None
        if task:
            validation = self.defense.validate_input(task)
            if not validation.valid:
                raise TaskRejectedError(validation.issues)
            protected = self.defense.protect_task(task)

        now = await get_utc_now()
        session_id = generate_session_id(now)
        started_at = now.isoformat()

        # Fails with a conflict if another start got here first; nothing is written in that case
        await self._transition(
            current,
            Trigger.START,
            session_id=session_id,
            region=region,
            started_at=started_at,
            last_activity=started_at,
            current_task=protected.sanitized_task if protected else None,
        )

        try:
            await self.ledger.create_session(session_id, region, spec.server_type, started_at)
            if protected:
                # Held until the instance reports ready
                await self.ledger.create_task(
                    session_id,
                    generate_task_id(),
                    protected.sanitized_task,
                    verification_token=protected.canary,
                )
            result = await self.provisioner.create_instance(ProvisionRequest(
                session_id=session_id,
                region=spec,
                idle_timeout=await self._idle_timeout(),
                webhook_url=f"{self.settings.public_base_url.rstrip('/')}/webhook",
                webhook_secret=self.settings.webhook_secret,
                auto_shutdown=auto_shutdown,
            ))
        except Exception as e:
            logger.error(f"Provisioning failed for session {session_id}: {str(e)}")
            record_external_failure("provisioner", "create_instance")
            await self.ledger.delete_session(session_id)
            await self.ledger.reset_server_state(expected_session_id=session_id)
            record_transition(ServerState.PROVISIONING, next_state(ServerState.PROVISIONING, Trigger.PROVISION_FAILED))
            raise ProvisioningError(f"Failed to provision instance: {str(e)}") from e

        if not await self._claim_instance(session_id, result.instance_id):
            logger.warning(
                f"Session {session_id} ended while instance {result.instance_id} was being created; deleting it"
            )
            await self._delete_instance(result.instance_id, session_id)
            state = await self.ledger.get_server_state()
            session = await self.ledger.get_session(session_id)
            if state.session_id != session_id and session and session.is_open():
                # Stopped before the session row existed, so nothing closed it
                await self.ledger.delete_session(session_id)
            raise StateConflictError(f"Session {session_id} was stopped during provisioning")

        await self.ledger.attach_instance(session_id, result.instance_id, result.server_name)
        await self.admission.record_cost(caller_id, estimate)

        estimated_ready = now + timedelta(seconds=self.settings.estimated_ready_seconds)
        logger.info(f"Session {session_id} provisioning {result.server_name} in {region.value}")

        return StartResponse(
            session_id=session_id,
            region=region,
            instance_id=result.instance_id,
            server_name=result.server_name,
            estimated_ready_time=estimated_ready.isoformat(),
        )

    async def stop(self, force: bool = False, commit_pending: bool = True) -> StopResponse:
        """
        Tear the instance down and close the session.

        A graceful stop syncs first; a forced one (or any stop while the
        instance is not reachable) goes straight to teardown. A stop while
        SYNCING or TERMINATING forces the teardown through.

        Raises:
            StateConflictError: Nothing is running
        """
        current = await self.ledger.get_server_state()
        if current.state == ServerState.OFFLINE:
            raise StateConflictError("Server is not running")

        graceful = not force and current.is_reachable()
        trigger = Trigger.GRACEFUL_STOP if graceful else Trigger.FORCED_STOP

        duration, cost = await self._shutdown(current, ShutdownReason.MANUAL, trigger, commit_pending)
        return StopResponse(
            message=f"Session {current.session_id} ended",
            duration_seconds=duration,
            cost_usd=cost,
        )

    async def _shutdown(
        self,
        current: ServerStateRecord,
        reason: ShutdownReason,
        trigger: Trigger,
        commit_pending: bool = True,
        grace_seconds: float = 0
    ) -> Tuple[int, float]:
        """
        Run the stop sequence from `current`.

        Duration and cost are fixed here, from started_at and the region
        rate as of now.
        """
        now = await get_utc_now()
        duration = seconds_between(current.started_at, now)
        cost = calculate_cost(duration, self._hourly_rate(current.region))

        record = await self._transition(current, trigger)

        if record.state == ServerState.SYNCING:
            await self._sync_instance(record, commit_pending)
            if grace_seconds > 0:
                # Let an in-flight sync land before the disk goes away
                await asyncio.sleep(grace_seconds)
            record = await self._transition(record, Trigger.SYNC_FINISHED)

        await self._teardown(record, reason, duration, cost)
        return duration, cost

    async def _sync_instance(self, record: ServerStateRecord, commit_pending: bool) -> None:
        """Best-effort sync; never blocks teardown."""
        try:
            await self.instance.trigger_sync(record.instance_address, commit_pending)
        except Exception as e:
            logger.error(f"Sync failed for session {record.session_id}, continuing shutdown: {str(e)}")
            record_external_failure("instance", "trigger_sync")

    async def _claim_instance(self, session_id: str, instance_id: str) -> bool:
        """
        Record a freshly created instance on the server state.

        Returns False when the session was stopped (or is being stopped)
        while the provider call was in flight, so the caller must delete
        the instance itself.
        """
        while True:
            current = await self.ledger.get_server_state()
            if current.session_id != session_id or current.state not in (
                ServerState.PROVISIONING, ServerState.RUNNING, ServerState.IDLE
            ):
                return False
            if current.state != ServerState.PROVISIONING:
                # Ready arrived first and already recorded the instance
                return True
            try:
                await self.ledger.compare_and_set(
                    ServerState.PROVISIONING, expected_session_id=session_id, instance_id=instance_id
                )
                return True
            except StateConflictError:
                continue

    async def _delete_instance(self, instance_id: str, session_id: Optional[str]) -> None:
        """Best-effort deprovision; a failure is logged and counted, never raised."""
        try:
            await self.provisioner.delete_instance(instance_id)
        except Exception as e:
            logger.error(
                f"Failed to delete instance {instance_id} for session {session_id}; "
                f"remote resource may have leaked: {str(e)}"
            )
            record_external_failure("provisioner", "delete_instance")

    async def _teardown(self, record: ServerStateRecord, reason: ShutdownReason, duration: int, cost: float) -> None:
        """Deprovision, close the session and reset to OFFLINE."""
        session_id = record.session_id
        try:
            session = await self.ledger.get_session(session_id)
            instance_id = record.instance_id or (session.instance_id if session else None)

            if instance_id:
                await self._delete_instance(instance_id, session_id)
            else:
                logger.warning(f"Session {session_id} has no instance to delete")

            tasks_completed = await self.ledger.count_completed_tasks(session_id)
            await self.ledger.close_session(session_id, duration, cost, reason, tasks_completed)
        finally:
            await self.ledger.reset_server_state(expected_session_id=session_id)
            record_transition(ServerState.TERMINATING, next_state(ServerState.TERMINATING, Trigger.TEARDOWN_FINISHED))
            logger.info(f"Session {session_id} torn down ({reason.value})")

    async def status(self) -> StatusResponse:
        """Current lifecycle snapshot with live uptime, idle and cost projections."""
        current = await self.ledger.get_server_state()
        now = await get_utc_now()
        summary = await self.ledger.get_monthly_summary(get_month_key(now))
        idle_timeout = await self._idle_timeout()

        if not current.is_active():
            return StatusResponse(
                state=current.state,
                idle_timeout=idle_timeout,
                costs=CostInfo(this_month=round(summary.total_cost, 4)),
            )

        uptime = seconds_between(current.started_at, now)
        hourly_rate = self._hourly_rate(current.region)
        session_cost = calculate_cost(uptime, hourly_rate)

        return StatusResponse(
            state=current.state,
            session_id=current.session_id,
            region=current.region,
            instance_id=current.instance_id,
            instance_address=current.instance_address,
            uptime=uptime,
            idle_time=seconds_between(current.idle_since, now),
            idle_timeout=idle_timeout,
            terminal_url=self._terminal_url() if current.is_reachable() else None,
            last_activity=current.last_activity,
            last_heartbeat=current.last_heartbeat,
            current_task=current.current_task,
            costs=CostInfo(
                current_session=session_cost,
                hourly_rate=hourly_rate,
                this_month=round(summary.total_cost + session_cost, 4),
            ),
        )

    async def send_task(self, task: str, mode: Optional[TaskMode] = None, auto_shutdown_on_complete: bool = False) -> TaskResponse:
        """
        Validate, protect and dispatch a task to the running agent.

        Raises:
            TaskRejectedError: Input failed validation
            StateConflictError: The instance is not RUNNING or IDLE
            InstanceUnavailableError: The instance did not accept the task
        """
        validation = self.defense.validate_input(task)
        if not validation.valid:
            raise TaskRejectedError(validation.issues)

        current = await self.ledger.get_server_state()
        if not current.is_reachable():
            raise StateConflictError(f"Server is {current.state.value}; tasks need a running instance")

        protected = self.defense.protect_task(task)
        now = await get_iso_timestamp()

        activity = dict(current_task=protected.sanitized_task, last_activity=now, idle_since=None)
        if current.state == ServerState.IDLE:
            record = await self._transition(current, Trigger.ACTIVITY, **activity)
        else:
            record = await self.ledger.compare_and_set(
                ServerState.RUNNING, expected_session_id=current.session_id, **activity
            )

        task_record = await self.ledger.create_task(
            record.session_id,
            generate_task_id(),
            protected.sanitized_task,
            mode=mode.value if mode else None,
            verification_token=protected.canary,
        )
        await self._deliver_task(record, task_record, auto_shutdown_on_complete)

        return TaskResponse(
            task_id=task_record.task_id,
            status=TaskStatus.RUNNING.value,
            message="Task sent to agent",
            warnings=protected.warnings,
        )

    async def _deliver_task(self, record: ServerStateRecord, task: TaskRecord, auto_shutdown: bool = False) -> bool:
        """
        Mark a pending task running and send it to the instance.

        Returns False when another request already started the task.
        """
        started = await self.ledger.update_task_status(task.task_id, TaskStatus.RUNNING)
        if started is None:
            return False

        payload = task.description
        if task.verification_token:
            payload = self.defense.embed_canary(task.description, task.verification_token)

        try:
            await self.instance.send_task(record.instance_address, payload, task.mode, task.task_id, auto_shutdown)
        except Exception as e:
            logger.error(f"Failed to send task {task.task_id} to session {record.session_id}: {str(e)}")
            record_external_failure("instance", "send_task")
            await self.ledger.update_task_status(task.task_id, TaskStatus.FAILED)
            await self._clear_current_task(record.session_id)
            raise InstanceUnavailableError(f"Instance did not accept the task: {str(e)}") from e

        return True

    async def _clear_current_task(self, session_id: str) -> None:
        try:
            await self.ledger.compare_and_set(None, expected_session_id=session_id, current_task=None)
        except StateConflictError as e:
            logger.debug(f"Not clearing current task: {str(e)}")

    async def sync(self) -> SyncResponse:
        """
        Ask the instance to sync its workspace and stamp the enabled repositories.

        Raises:
            StateConflictError: The instance is not RUNNING or IDLE
            InstanceUnavailableError: The sync request failed
        """
        current = await self.ledger.get_server_state()
        if not current.is_reachable():
            raise StateConflictError(f"Server is {current.state.value}; nothing to sync")

        try:
            await self.instance.trigger_sync(current.instance_address, commit_pending=True)
        except Exception as e:
            logger.error(f"Manual sync failed for session {current.session_id}: {str(e)}")
            record_external_failure("instance", "trigger_sync")
            raise InstanceUnavailableError(f"Sync failed: {str(e)}") from e

        now = await get_iso_timestamp()
        synced = 0
        for repository in await self.ledger.list_repositories():
            if repository.enabled:
                await self.ledger.update_repository(repository.id, last_sync=now)
                synced += 1

        return SyncResponse(status="ok", message=f"Sync triggered for {synced} repositories")

    # Projects

    async def list_projects(self) -> ProjectsResponse:
        return ProjectsResponse(projects=await self.ledger.list_repositories())

    async def add_project(self, name: str, url: str, branch: str, path: str) -> Repository:
        return await self.ledger.add_repository(name, url, branch, path)

    async def update_project(self, repository_id: int, enabled: Optional[bool]) -> Repository:
        return await self.ledger.update_repository(repository_id, enabled=enabled)

    async def delete_project(self, repository_id: int) -> None:
        if not await self.ledger.delete_repository(repository_id):
            raise RecordNotFoundError(f"Repository {repository_id} not found")

    # History and config

    async def history(self, limit: int = 20, offset: int = 0) -> HistoryResponse:
        """Sessions newest first, plus this month's totals."""
        sessions = await self.ledger.list_sessions(limit, offset)
        summary = await self.ledger.get_monthly_summary(get_month_key(await get_utc_now()))

        return HistoryResponse(
            sessions=[
                SessionSummary(
                    session_id=session.session_id,
                    started_at=session.started_at,
                    ended_at=session.ended_at,
                    duration=session.duration_seconds,
                    duration_formatted=format_duration(session.duration_seconds),
                    region=session.region,
                    cost_usd=session.cost_usd,
                    tasks_completed=session.tasks_completed,
                    shutdown_reason=session.shutdown_reason,
                )
                for session in sessions
            ],
            this_month=MonthInfo(
                total_hours=round(summary.total_hours, 2),
                total_cost=round(summary.total_cost, 4),
                session_count=summary.session_count,
            ),
        )

    async def get_config(self) -> ConfigResponse:
        """Stored config over the environment defaults."""
        config = {
            ConfigKey.IDLE_TIMEOUT.value: str(self.settings.default_idle_timeout),
            ConfigKey.DEFAULT_REGION.value: self.settings.default_region,
        }
        config.update(await self.ledger.get_all_config())
        return ConfigResponse(config=config)

    async def update_config(self, update: ConfigUpdateRequest) -> ConfigResponse:
        """Merge the given fields into the config hash (last write wins)."""
        values = {}
        if update.idle_timeout is not None:
            values[ConfigKey.IDLE_TIMEOUT.value] = str(update.idle_timeout)
        if update.default_region is not None:
            values[ConfigKey.DEFAULT_REGION.value] = update.default_region.value
        if update.auto_commit is not None:
            values[ConfigKey.AUTO_COMMIT.value] = str(update.auto_commit).lower()
        if update.auto_shutdown_on_complete is not None:
            values[ConfigKey.AUTO_SHUTDOWN_ON_COMPLETE.value] = str(update.auto_shutdown_on_complete).lower()
        if update.models:
            if update.models.reasoning:
                values[ConfigKey.MODEL_REASONING.value] = update.models.reasoning
            if update.models.vision:
                values[ConfigKey.MODEL_VISION.value] = update.models.vision

        await self.ledger.update_config(values)
        return await self.get_config()

    # Webhooks

    async def handle_ready(self, instance_id: str, address: str) -> WebhookAck:
        """
        Instance finished booting.

        PROVISIONING -> RUNNING, DNS best-effort, then any task queued at
        start is dispatched. A repeated ready while RUNNING/IDLE only
        refreshes the address; in any other state it is ignored, as is a
        ready from any instance other than the one recorded for the session.
        """
        current = await self.ledger.get_server_state()
        now = await get_iso_timestamp()

        if current.instance_id and current.instance_id != instance_id:
            logger.warning(
                f"Ready from {instance_id} ignored; session {current.session_id} runs instance {current.instance_id}"
            )
            return WebhookAck(state=current.state, message="ignored")

        if current.state == ServerState.PROVISIONING:
            updates = dict(
                instance_id=instance_id,
                instance_address=address,
                last_heartbeat=now,
                last_activity=now,
            )
            if await self._update_dns(address, current.session_id):
                updates["dns_updated_at"] = now
            record = await self._transition(current, Trigger.READY, **updates)

        elif current.state in (ServerState.RUNNING, ServerState.IDLE):
            updates = dict(instance_id=instance_id, instance_address=address, last_heartbeat=now)
            if address != current.instance_address and await self._update_dns(address, current.session_id):
                updates["dns_updated_at"] = now
            record = await self.ledger.compare_and_set(
                current.state, expected_session_id=current.session_id, **updates
            )

        else:
            logger.warning(f"Ready from {instance_id} ignored while {current.state.value}")
            return WebhookAck(state=current.state, message="ignored")

        await self._dispatch_pending_tasks(record)
        return WebhookAck(state=record.state)

    async def _update_dns(self, address: str, session_id: Optional[str]) -> bool:
        try:
            await self.dns.update_record(address)
            return True
        except Exception as e:
            logger.error(f"DNS update to {address} failed for session {session_id}: {str(e)}")
            record_external_failure("dns", "update_record")
            return False

    async def _dispatch_pending_tasks(self, record: ServerStateRecord) -> None:
        for task in await self.ledger.get_session_tasks(record.session_id):
            if task.status != TaskStatus.PENDING:
                continue
            try:
                await self._deliver_task(record, task)
            except InstanceUnavailableError as e:
                logger.warning(f"Initial task {task.task_id} not delivered: {str(e)}")

    async def handle_heartbeat(self, idle_seconds: int, reported_state: Optional[str] = None) -> WebhookAck:
        """
        RUNNING <-> IDLE based on the reported idle time.

        Heartbeats in any other state are recorded without reclassifying it.
        """
        current = await self.ledger.get_server_state()
        if not current.is_active():
            logger.warning(f"Heartbeat ignored while OFFLINE (instance reports {reported_state})")
            return WebhookAck(state=current.state, message="ignored")

        now = await get_iso_timestamp()
        threshold = self.settings.idle_threshold_seconds

        try:
            if current.state == ServerState.RUNNING and idle_seconds > threshold:
                record = await self._transition(
                    current,
                    Trigger.IDLE_DETECTED,
                    idle_since=current.idle_since or now,
                    last_heartbeat=now,
                )
            elif current.state == ServerState.IDLE and idle_seconds < threshold:
                record = await self._transition(
                    current,
                    Trigger.ACTIVITY,
                    idle_since=None,
                    last_activity=now,
                    last_heartbeat=now,
                )
            else:
                record = await self.ledger.compare_and_set(
                    current.state, expected_session_id=current.session_id, last_heartbeat=now
                )
        except StateConflictError as e:
            # Another transition won; the next heartbeat re-evaluates
            logger.info(f"Heartbeat lost a race: {str(e)}")
            record = await self.ledger.get_server_state()

        return WebhookAck(state=record.state)

    async def handle_task_complete(
        self,
        status: TaskStatus,
        task_id: Optional[str] = None,
        trigger_shutdown: bool = False,
        output: Optional[str] = None,
        tokens_used: Optional[int] = None
    ) -> WebhookAck:
        """
        Record a task's terminal status and optionally cascade into shutdown.

        Output carrying the task's canary marks the task untrusted. The
        shutdown cascade runs unless auto_shutdown_on_complete is "false".
        """
        current = await self.ledger.get_server_state()

        if task_id:
            await self._complete_task(task_id, status, output, tokens_used)

        if current.is_active():
            await self._clear_current_task(current.session_id)

        if not trigger_shutdown or not current.is_active():
            return WebhookAck(state=(await self.ledger.get_server_state()).state)

        policy = await self.ledger.get_config(ConfigKey.AUTO_SHUTDOWN_ON_COMPLETE.value)
        if policy == "false":
            logger.info(f"Shutdown requested by task {task_id} but auto-shutdown is disabled")
            return WebhookAck(state=current.state, message="auto-shutdown disabled")

        current = await self.ledger.get_server_state()
        if not can_transition(current.state, Trigger.TASK_COMPLETE_SHUTDOWN):
            return WebhookAck(state=current.state, message="already shutting down")

        try:
            await self._shutdown(current, ShutdownReason.TASK_COMPLETE, Trigger.TASK_COMPLETE_SHUTDOWN)
        except StateConflictError as e:
            logger.info(f"Task-complete shutdown skipped: {str(e)}")

        return WebhookAck(state=(await self.ledger.get_server_state()).state, message="shutdown")

    async def _complete_task(self, task_id: str, status: TaskStatus, output: Optional[str], tokens_used: Optional[int]) -> None:
        task = await self.ledger.get_task(task_id)
        if task is None:
            logger.warning(f"Completion for unknown task {task_id}")
            return

        trusted = None
        if output is not None and task.verification_token:
            trusted = self.defense.validate_output(output, task.verification_token).valid
            if not trusted:
                logger.warning(f"Task {task_id} output flagged as untrusted (session {task.session_id})")

        try:
            await self.ledger.update_task_status(task_id, status, tokens_used=tokens_used, output_trusted=trusted)
        except InvalidTaskTransitionError as e:
            logger.warning(str(e))

    async def handle_idle_timeout(self) -> WebhookAck:
        """
        Instance reports its idle timer fired: a graceful stop with reason
        idle_timeout. Repeats after teardown are no-ops.
        """
        current = await self.ledger.get_server_state()
        if current.state not in (ServerState.RUNNING, ServerState.IDLE):
            logger.info(f"Idle timeout ignored while {current.state.value}")
            return WebhookAck(state=current.state, message="ignored")

        auto_commit = await self.ledger.get_config(ConfigKey.AUTO_COMMIT.value)
        trigger = Trigger.GRACEFUL_STOP if current.is_reachable() else Trigger.FORCED_STOP

        try:
            await self._shutdown(
                current,
                ShutdownReason.IDLE_TIMEOUT,
                trigger,
                commit_pending=auto_commit != "false",
                grace_seconds=self.settings.idle_timeout_grace_seconds,
            )
        except StateConflictError as e:
            logger.info(f"Idle timeout lost a race: {str(e)}")

        return WebhookAck(state=(await self.ledger.get_server_state()).state)
