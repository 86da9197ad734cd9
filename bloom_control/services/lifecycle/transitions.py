"""
Lifecycle state machine.

OFFLINE -> PROVISIONING -> RUNNING <-> IDLE -> SYNCING -> TERMINATING -> OFFLINE

Every legal (state, trigger) pair is listed in TRANSITIONS; anything else
is a conflict. PROVISIONING, SYNCING and TERMINATING are transient: each
has a path to TERMINATING or OFFLINE that does not depend on the instance.
"""

from enum import Enum
from typing import Dict, Tuple

from ...core.exceptions import StateConflictError
from ...models.enums import ServerState


class Trigger(str, Enum):
    """Events that move the server between states."""
    START = "start"
    PROVISION_FAILED = "provision_failed"
    READY = "ready"
    IDLE_DETECTED = "idle_detected"
    ACTIVITY = "activity"
    GRACEFUL_STOP = "graceful_stop"
    FORCED_STOP = "forced_stop"
    SYNC_FINISHED = "sync_finished"
    TASK_COMPLETE_SHUTDOWN = "task_complete_shutdown"
    TEARDOWN_FINISHED = "teardown_finished"


TRANSITIONS: Dict[Tuple[ServerState, Trigger], ServerState] = {
    (ServerState.OFFLINE, Trigger.START): ServerState.PROVISIONING,

    (ServerState.PROVISIONING, Trigger.READY): ServerState.RUNNING,
    (ServerState.PROVISIONING, Trigger.PROVISION_FAILED): ServerState.OFFLINE,
    # No address to sync yet, so any stop is a forced one
    (ServerState.PROVISIONING, Trigger.FORCED_STOP): ServerState.TERMINATING,
    (ServerState.PROVISIONING, Trigger.TASK_COMPLETE_SHUTDOWN): ServerState.TERMINATING,

    (ServerState.RUNNING, Trigger.IDLE_DETECTED): ServerState.IDLE,
    (ServerState.RUNNING, Trigger.GRACEFUL_STOP): ServerState.SYNCING,
    (ServerState.RUNNING, Trigger.FORCED_STOP): ServerState.TERMINATING,
    (ServerState.RUNNING, Trigger.TASK_COMPLETE_SHUTDOWN): ServerState.TERMINATING,

    (ServerState.IDLE, Trigger.ACTIVITY): ServerState.RUNNING,
    (ServerState.IDLE, Trigger.GRACEFUL_STOP): ServerState.SYNCING,
    (ServerState.IDLE, Trigger.FORCED_STOP): ServerState.TERMINATING,
    (ServerState.IDLE, Trigger.TASK_COMPLETE_SHUTDOWN): ServerState.TERMINATING,

    (ServerState.SYNCING, Trigger.SYNC_FINISHED): ServerState.TERMINATING,
    # Recovery from a stop that died mid-sequence
    (ServerState.SYNCING, Trigger.FORCED_STOP): ServerState.TERMINATING,
    (ServerState.SYNCING, Trigger.TASK_COMPLETE_SHUTDOWN): ServerState.TERMINATING,

    (ServerState.TERMINATING, Trigger.TEARDOWN_FINISHED): ServerState.OFFLINE,
    (ServerState.TERMINATING, Trigger.FORCED_STOP): ServerState.TERMINATING,
}


def next_state(state: ServerState, trigger: Trigger) -> ServerState:
    """
    Resolve a transition.

    Raises:
        StateConflictError: The trigger is not valid in `state`
    """
    try:
        return TRANSITIONS[(ServerState(state), Trigger(trigger))]
    except KeyError:
        raise StateConflictError(f"Cannot {Trigger(trigger).value.replace('_', ' ')} while {ServerState(state).value}")


def can_transition(state: ServerState, trigger: Trigger) -> bool:
    return (ServerState(state), Trigger(trigger)) in TRANSITIONS
