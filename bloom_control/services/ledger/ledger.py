"""
Ledger - durable record of the server lifecycle, sessions, tasks,
monthly cost rollups, configuration and project repositories.

Key layout:
    server_state                 JSON ServerStateRecord (singleton)
    session:{id}                 JSON SessionRecord
    sessions:index               ZSET session_id -> start epoch
    task:{id}                    JSON TaskRecord
    session_tasks:{session_id}   LIST of task ids in creation order
    monthly_summary:{YYYY-MM}    HASH of additive totals
    config                       HASH key -> value
    repositories                 HASH id -> JSON Repository
"""

from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from loguru import logger
from redis.exceptions import WatchError

from ...clients.redis import RedisClient
from ...core.exceptions import (
    StateConflictError,
    InvalidTaskTransitionError,
    RecordNotFoundError
)
from ...models.enums import ServerState, Region, ShutdownReason, TaskStatus
from ...models.internal import (
    ServerStateRecord,
    SessionRecord,
    TaskRecord,
    MonthlySummary,
    Repository
)
from ...utils.async_time import get_utc_now, get_month_key, parse_timestamp


SERVER_STATE_KEY = "server_state"
SESSION_INDEX_KEY = "sessions:index"
CONFIG_KEY = "config"
REPOSITORIES_KEY = "repositories"
REPOSITORY_SEQ_KEY = "repositories:next_id"

# Allowed task status moves
TASK_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.RUNNING},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}

# Sentinel for "do not check the session id"
_ANY = object()

ExpectedState = Union[None, ServerState, Iterable[ServerState]]


def _session_key(session_id: str) -> str:
    return f"session:{session_id}"


def _task_key(task_id: str) -> str:
    return f"task:{task_id}"


def _session_tasks_key(session_id: str) -> str:
    return f"session_tasks:{session_id}"


def _monthly_key(month: str) -> str:
    return f"monthly_summary:{month}"


def _check_state_invariant(record: ServerStateRecord) -> None:
    if (record.session_id is None) != (record.state == ServerState.OFFLINE):
        raise ValueError(
            f"server_state invariant violated: state={record.state.value} session_id={record.session_id}"
        )


class Ledger:
    """
    Durable records over the Redis storage contract.

    Every write to the singleton server state is an optimistic
    compare-and-swap: callers name the state (and optionally the session)
    they read, and the write is refused with StateConflictError if
    another request changed it first.
    """

    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    async def _watch_update(self, key: str, mutate: Callable[[Optional[str]], Tuple[Any, Optional[Callable]]]) -> Any:
        """
        Optimistic read-modify-write of one key.

        `mutate` receives the current raw value and returns (result, queue)
        where `queue(pipe)` adds the writes to the transaction, or None to
        skip writing. A concurrent change to `key` raises StateConflictError.
        """
        async with self.redis.transaction() as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.get(key)
                result, queue = mutate(current)
                if queue is None:
                    return result
                pipe.multi()
                queue(pipe)
                await pipe.execute()
                return result
            except WatchError:
                raise StateConflictError(f"{key} was modified concurrently")

    # Server state

    async def get_server_state(self) -> ServerStateRecord:
        """Read the singleton record, creating it OFFLINE if it does not exist yet."""
        raw = await self.redis.get(SERVER_STATE_KEY)
        if raw:
            return ServerStateRecord.model_validate_json(raw)

        record = ServerStateRecord()
        await self.redis.set_if_absent(SERVER_STATE_KEY, record.model_dump_json())
        raw = await self.redis.get(SERVER_STATE_KEY)
        return ServerStateRecord.model_validate_json(raw)

    async def compare_and_set(
        self,
        expected_state: ExpectedState,
        expected_session_id: Any = _ANY,
        **updates: Any
    ) -> ServerStateRecord:
        """
        Apply `updates` to the server state if it still matches what the caller read.

        Args:
            expected_state: State (or states) the record must be in; None skips the check
            expected_session_id: Session the record must belong to; omitted skips the check
            **updates: ServerStateRecord fields to change

        Returns:
            The record as written

        Raises:
            StateConflictError: The stored record no longer matches
        """
        await self.get_server_state()

        if isinstance(expected_state, ServerState):
            allowed = {expected_state}
        elif expected_state is None:
            allowed = None
        else:
            allowed = set(expected_state)

        def mutate(raw):
            current = ServerStateRecord.model_validate_json(raw) if raw else ServerStateRecord()
            if allowed is not None and current.state not in allowed:
                raise StateConflictError(
                    f"Server is {current.state.value}, expected {', '.join(sorted(s.value for s in allowed))}"
                )
            if expected_session_id is not _ANY and current.session_id != expected_session_id:
                raise StateConflictError(
                    f"Server state belongs to session {current.session_id}, not {expected_session_id}"
                )
            updated = current.model_copy(update=updates)
            # Re-validate so enum fields given as strings are coerced
            updated = ServerStateRecord.model_validate(updated.model_dump())
            _check_state_invariant(updated)
            data = updated.model_dump_json()
            return updated, lambda pipe: pipe.set(SERVER_STATE_KEY, data)

        record = await self._watch_update(SERVER_STATE_KEY, mutate)
        logger.debug(f"Server state -> {record.state.value} (session {record.session_id})")
        return record

    async def reset_server_state(self, expected_session_id: Any = _ANY) -> ServerStateRecord:
        """
        Reset the server state to OFFLINE with every field cleared.

        With `expected_session_id`, only resets if the record still belongs
        to that session; a record already reset (or taken over by a newer
        session) is left untouched and returned as-is.
        """
        def mutate(raw):
            current = ServerStateRecord.model_validate_json(raw) if raw else ServerStateRecord()
            if expected_session_id is not _ANY and current.session_id != expected_session_id:
                return current, None
            fresh = ServerStateRecord()
            data = fresh.model_dump_json()
            return fresh, lambda pipe: pipe.set(SERVER_STATE_KEY, data)

        record = await self._watch_update(SERVER_STATE_KEY, mutate)
        logger.info("Server state reset to OFFLINE")
        return record

    # Sessions

    async def create_session(self, session_id: str, region: Region, server_type: str, started_at: str) -> SessionRecord:
        """Create an open session row."""
        session = SessionRecord(
            session_id=session_id,
            region=region,
            server_type=server_type,
            started_at=started_at,
        )
        created = await self.redis.set_if_absent(_session_key(session_id), session.model_dump_json())
        if not created:
            raise StateConflictError(f"Session {session_id} already exists")

        score = parse_timestamp(started_at).timestamp()
        await self.redis.index_add(SESSION_INDEX_KEY, session_id, score)
        logger.info(f"Created session {session_id} ({region.value}, {server_type})")
        return session

    async def attach_instance(self, session_id: str, instance_id: str, server_name: Optional[str]) -> SessionRecord:
        """Remember the provider-side handle for a session (known before readiness)."""
        def mutate(raw):
            if not raw:
                raise RecordNotFoundError(f"Session {session_id} not found")
            session = SessionRecord.model_validate_json(raw)
            session.instance_id = instance_id
            session.server_name = server_name
            data = session.model_dump_json()
            return session, lambda pipe: pipe.set(_session_key(session_id), data)

        return await self._watch_update(_session_key(session_id), mutate)

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.redis.get(_session_key(session_id))
        return SessionRecord.model_validate_json(raw) if raw else None

    async def delete_session(self, session_id: str) -> None:
        """Remove a session that never got an instance, with its tasks."""
        task_ids = await self.redis.list_all(_session_tasks_key(session_id))
        await self.redis.delete(
            _session_key(session_id),
            _session_tasks_key(session_id),
            *[_task_key(task_id) for task_id in task_ids]
        )
        await self.redis.index_remove(SESSION_INDEX_KEY, session_id)
        logger.info(f"Deleted session {session_id}")

    async def close_session(
        self,
        session_id: str,
        duration_seconds: int,
        cost_usd: float,
        shutdown_reason: ShutdownReason,
        tasks_completed: int
    ) -> bool:
        """
        Close a session and fold it into the monthly summary.

        Closing and the rollup happen in one transaction, so a session is
        counted exactly once. Closing a missing or already-closed session
        is a no-op.

        Returns:
            True if this call closed the session
        """
        now = await get_utc_now()
        ended_at = now.isoformat()
        month = get_month_key(now)

        def mutate(raw):
            if not raw:
                logger.warning(f"Close requested for unknown session {session_id}; ignoring")
                return False, None
            session = SessionRecord.model_validate_json(raw)
            if not session.is_open():
                logger.info(f"Session {session_id} already closed; ignoring")
                return False, None

            session.ended_at = ended_at
            session.duration_seconds = duration_seconds
            session.cost_usd = cost_usd
            session.shutdown_reason = shutdown_reason
            session.tasks_completed = tasks_completed
            data = session.model_dump_json()

            def queue(pipe):
                pipe.set(_session_key(session_id), data)
                summary_key = _monthly_key(month)
                pipe.hincrbyfloat(summary_key, "total_hours", duration_seconds / 3600)
                pipe.hincrbyfloat(summary_key, "total_cost", cost_usd)
                pipe.hincrby(summary_key, "session_count", 1)
                pipe.hincrby(summary_key, "tasks_completed", tasks_completed)

            return True, queue

        closed = await self._watch_update(_session_key(session_id), mutate)
        if closed:
            logger.info(
                f"Closed session {session_id}: {duration_seconds}s, ${cost_usd:.4f}, "
                f"reason={shutdown_reason.value}, tasks={tasks_completed}"
            )
        return closed

    async def list_sessions(self, limit: int = 20, offset: int = 0) -> List[SessionRecord]:
        """Sessions, newest first."""
        if limit <= 0:
            return []
        session_ids = await self.redis.index_page_desc(SESSION_INDEX_KEY, offset, limit)
        raws = await self.redis.get_many([_session_key(sid) for sid in session_ids])
        return [SessionRecord.model_validate_json(raw) for raw in raws if raw]

    async def get_monthly_summary(self, month: str) -> MonthlySummary:
        """Totals for a calendar month ('YYYY-MM'); zeros when nothing was recorded."""
        data = await self.redis.hget_all(_monthly_key(month))
        return MonthlySummary(
            month=month,
            total_hours=float(data.get("total_hours", 0)),
            total_cost=float(data.get("total_cost", 0)),
            session_count=int(data.get("session_count", 0)),
            tasks_completed=int(data.get("tasks_completed", 0)),
        )

    # Tasks

    async def create_task(
        self,
        session_id: str,
        task_id: str,
        description: str,
        mode: Optional[str] = None,
        verification_token: Optional[str] = None
    ) -> TaskRecord:
        """Create a pending task attached to a session."""
        now = await get_utc_now()
        task = TaskRecord(
            task_id=task_id,
            session_id=session_id,
            description=description,
            mode=mode,
            started_at=now.isoformat(),
            verification_token=verification_token,
        )
        created = await self.redis.set_if_absent(_task_key(task_id), task.model_dump_json())
        if not created:
            raise StateConflictError(f"Task {task_id} already exists")
        await self.redis.list_append(_session_tasks_key(session_id), task_id)
        logger.debug(f"Created task {task_id} in session {session_id}")
        return task

    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        raw = await self.redis.get(_task_key(task_id))
        return TaskRecord.model_validate_json(raw) if raw else None

    async def get_session_tasks(self, session_id: str) -> List[TaskRecord]:
        task_ids = await self.redis.list_all(_session_tasks_key(session_id))
        raws = await self.redis.get_many([_task_key(task_id) for task_id in task_ids])
        return [TaskRecord.model_validate_json(raw) for raw in raws if raw]

    async def count_completed_tasks(self, session_id: str) -> int:
        tasks = await self.get_session_tasks(session_id)
        return sum(1 for task in tasks if task.status == TaskStatus.COMPLETED)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        tokens_used: Optional[int] = None,
        output_trusted: Optional[bool] = None
    ) -> Optional[TaskRecord]:
        """
        Move a task forward.

        Re-applying the status a task already has is a no-op (returns None),
        so retried completion callbacks are harmless.

        Raises:
            RecordNotFoundError: Unknown task
            InvalidTaskTransitionError: The move is not pending -> running -> completed|failed
        """
        now = await get_utc_now()

        def mutate(raw):
            if not raw:
                raise RecordNotFoundError(f"Task {task_id} not found")
            task = TaskRecord.model_validate_json(raw)
            if task.status == status or (task.status.is_terminal() and status.is_terminal()):
                return None, None
            if status not in TASK_TRANSITIONS[task.status]:
                raise InvalidTaskTransitionError(
                    f"Task {task_id} cannot move from {task.status.value} to {status.value}"
                )
            task.status = status
            if status.is_terminal():
                task.completed_at = now.isoformat()
            if tokens_used is not None:
                task.tokens_used = tokens_used
            if output_trusted is not None:
                task.output_trusted = output_trusted
            data = task.model_dump_json()
            return task, lambda pipe: pipe.set(_task_key(task_id), data)

        task = await self._watch_update(_task_key(task_id), mutate)
        if task:
            logger.info(f"Task {task_id} -> {status.value}")
        return task

    # Config

    async def get_config(self, key: str) -> Optional[str]:
        return await self.redis.hget(CONFIG_KEY, key)

    async def set_config(self, key: str, value: str) -> None:
        await self.redis.hset_many(CONFIG_KEY, {key: value})

    async def update_config(self, values: Dict[str, str]) -> Dict[str, str]:
        """Last-write-wins merge; returns the full config afterwards."""
        await self.redis.hset_many(CONFIG_KEY, values)
        if values:
            logger.info(f"Config updated: {sorted(values)}")
        return await self.get_all_config()

    async def get_all_config(self) -> Dict[str, str]:
        return await self.redis.hget_all(CONFIG_KEY)

    # Repositories

    async def list_repositories(self) -> List[Repository]:
        data = await self.redis.hget_all(REPOSITORIES_KEY)
        repositories = [Repository.model_validate_json(raw) for raw in data.values()]
        return sorted(repositories, key=lambda repo: repo.name)

    async def add_repository(self, name: str, url: str, branch: str, path: str) -> Repository:
        now = await get_utc_now()
        repository_id = await self.redis.next_id(REPOSITORY_SEQ_KEY)
        repository = Repository(
            id=repository_id,
            name=name,
            url=url,
            branch=branch,
            path=path,
            created_at=now.isoformat(),
        )
        await self.redis.hset_many(REPOSITORIES_KEY, {str(repository_id): repository.model_dump_json()})
        logger.info(f"Added repository {name} ({url})")
        return repository

    async def update_repository(
        self,
        repository_id: int,
        enabled: Optional[bool] = None,
        last_sync: Optional[str] = None
    ) -> Repository:
        raw = await self.redis.hget(REPOSITORIES_KEY, str(repository_id))
        if not raw:
            raise RecordNotFoundError(f"Repository {repository_id} not found")
        repository = Repository.model_validate_json(raw)
        if enabled is not None:
            repository.enabled = enabled
        if last_sync is not None:
            repository.last_sync = last_sync
        await self.redis.hset_many(REPOSITORIES_KEY, {str(repository_id): repository.model_dump_json()})
        return repository

    async def delete_repository(self, repository_id: int) -> bool:
        return await self.redis.hdel(REPOSITORIES_KEY, str(repository_id))
