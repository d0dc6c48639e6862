"""
rds_control.handler — Cost-saving power switch for the analytics PostgreSQL instance.

Actions: status, start, stop, snapshot, snapshots, restore, timer, extend-timer.

Every start (and extend-timer) re-arms a one-shot EventBridge schedule that
invokes this function with {"action": "stop"}; stop and snapshot disarm it.
The shutdown-at parameter mirrors the schedule for the dashboard and the two
are always cleared together.

Snapshots are manual and carry no TTL, so the controller keeps at most
SNAPSHOTS_TO_KEEP available ones per instance, pruning after each snapshot.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import boto3
from analytics_core import (
    AnalyticsError,
    InvalidInvocation,
    NoSnapshotAvailable,
    OneShotScheduler,
    ParameterStore,
)
from analytics_core.invocation import (
    is_http_event,
    parse_invocation,
    render,
    render_error,
    render_exception,
)
from analytics_core.models import (
    DEFAULT_SHUTDOWN_AFTER_MINUTES,
    SNAPSHOTS_TO_KEEP,
    PowerState,
    RdsAction,
    SnapshotSummary,
    TimerState,
    epoch_millis,
    iso_utc,
    newest_first,
    parse_iso_utc,
)
from analytics_core.parameters import error_code
from aws_lambda_powertools import Logger, Tracer
from botocore.exceptions import ClientError

logger = Logger(service="rds-control")
tracer = Tracer(service="rds-control")

_INSTANCE_ID_PARAM_ENV = "INSTANCE_ID_PARAM"
_SHUTDOWN_AT_PARAM_ENV = "SHUTDOWN_AT_PARAM"
_SCHEDULE_NAME_ENV = "SHUTDOWN_SCHEDULE_NAME"
_SHUTDOWN_AFTER_ENV = "SHUTDOWN_AFTER_MINUTES"
_LAMBDA_ARN_ENV = "LAMBDA_ARN"
_SCHEDULER_ROLE_ARN_ENV = "SCHEDULER_ROLE_ARN"
_SNAPSHOT_PREFIX_ENV = "SNAPSHOT_PREFIX"
_RESTORE_CLASS_ENV = "RESTORE_INSTANCE_CLASS"

_INVALID_STATE = "InvalidDBInstanceState"
_SNAPSHOT_NOT_FOUND = "DBSnapshotNotFound"

ROUTES: dict[str, str] = {
    "/rds/status": RdsAction.STATUS,
    "/rds/start": RdsAction.START,
    "/rds/stop": RdsAction.STOP,
    "/rds/snapshot": RdsAction.SNAPSHOT,
    "/rds/snapshots": RdsAction.SNAPSHOTS,
    "/rds/restore": RdsAction.RESTORE,
    "/rds/timer": RdsAction.TIMER,
    "/rds/extend-timer": RdsAction.EXTEND_TIMER,
}


@dataclass(frozen=True)
class RdsControlDependencies:
    rds: Any
    params: ParameterStore
    scheduler: OneShotScheduler


def _dependencies() -> RdsControlDependencies:
    region = os.environ.get("AWS_REGION", "eu-west-2")
    session = boto3.session.Session(region_name=region)
    return RdsControlDependencies(
        rds=session.client("rds"),
        params=ParameterStore(ssm_client=session.client("ssm")),
        scheduler=OneShotScheduler(scheduler_client=session.client("scheduler")),
    )


def _now_utc() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _instance_id_param() -> str:
    return os.environ.get(_INSTANCE_ID_PARAM_ENV, "/nakom-admin/rds/instance-id")


def _shutdown_at_param() -> str:
    return os.environ.get(_SHUTDOWN_AT_PARAM_ENV, "/nakom-admin/rds/shutdown-at")


def _schedule_name() -> str:
    return os.environ.get(_SCHEDULE_NAME_ENV, "nakom-admin-rds-shutdown")


def _shutdown_after() -> timedelta:
    minutes = int(os.environ.get(_SHUTDOWN_AFTER_ENV, DEFAULT_SHUTDOWN_AFTER_MINUTES))
    return timedelta(minutes=minutes)


def _required_env(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise RuntimeError(f"{name} environment variable not set")
    return value


def _snapshot_prefix(instance_id: str) -> str:
    return os.environ.get(_SNAPSHOT_PREFIX_ENV) or instance_id


def _restore_instance_class() -> str:
    return os.environ.get(_RESTORE_CLASS_ENV, "db.t4g.micro")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _instance_id(deps: RdsControlDependencies) -> str:
    instance_id = deps.params.get(_instance_id_param())
    logger.append_keys(instance_id=instance_id)
    return instance_id


def _describe_instance(deps: RdsControlDependencies, instance_id: str) -> dict[str, Any]:
    response = deps.rds.describe_db_instances(DBInstanceIdentifier=instance_id)
    instances = response.get("DBInstances", [])
    return instances[0] if instances else {}


def _request_power_change(
    deps: RdsControlDependencies,
    instance_id: str,
    call: Callable[..., Any],
    *,
    already: frozenset[str],
) -> bool:
    """Ask RDS for a power transition.

    RDS rejects start on a running instance (and stop on a stopped one) with
    InvalidDBInstanceState.  That counts as success when the instance is
    already in, or heading to, one of the ``already`` states.
    Returns True if RDS accepted a new transition.
    """
    try:
        call(DBInstanceIdentifier=instance_id)
    except ClientError as exc:
        if error_code(exc) != _INVALID_STATE:
            raise
        current = str(_describe_instance(deps, instance_id).get("DBInstanceStatus", ""))
        if current not in already:
            raise
        logger.info("Instance already in requested state", current_status=current)
        return False
    return True


def _arm_timer(deps: RdsControlDependencies) -> datetime:
    shutdown_at = (_now_utc() + _shutdown_after()).replace(microsecond=0)
    deps.params.put(_shutdown_at_param(), iso_utc(shutdown_at))
    try:
        deps.scheduler.arm(
            _schedule_name(),
            when=shutdown_at,
            target_arn=_required_env(_LAMBDA_ARN_ENV),
            role_arn=_required_env(_SCHEDULER_ROLE_ARN_ENV),
            payload={"action": RdsAction.STOP.value},
        )
    except Exception:
        # Never leave a visible shutdown time without a schedule behind it.
        deps.params.delete(_shutdown_at_param())
        raise
    logger.info("Auto-shutdown armed", shutdown_at=iso_utc(shutdown_at))
    return shutdown_at


def _clear_timer(deps: RdsControlDependencies) -> None:
    deps.params.delete(_shutdown_at_param())
    deps.scheduler.disarm(_schedule_name())


def _rearm_after_failed_stop(deps: RdsControlDependencies) -> None:
    """Keep the timer honest when stop() fails.

    A fired schedule has already deleted itself, so a shutdownAt with no
    schedule behind it is re-armed one timer duration out and the stop is
    retried then.  A still-pending schedule, or no timer at all, is left alone.
    """
    if deps.params.get_optional(_shutdown_at_param()) is None:
        return
    if deps.scheduler.exists(_schedule_name()):
        return
    logger.warning("Stop failed after the shutdown schedule fired; re-arming")
    try:
        _arm_timer(deps)
    except Exception:
        logger.exception("Could not re-arm auto-shutdown after failed stop")
        deps.params.delete(_shutdown_at_param())


def _list_snapshots(deps: RdsControlDependencies, instance_id: str) -> list[SnapshotSummary]:
    snapshots: list[SnapshotSummary] = []
    kwargs: dict[str, Any] = {"DBInstanceIdentifier": instance_id, "SnapshotType": "manual"}
    while True:
        response = deps.rds.describe_db_snapshots(**kwargs)
        snapshots.extend(SnapshotSummary.from_rds(raw) for raw in response.get("DBSnapshots", []))
        marker = response.get("Marker")
        if not marker:
            return snapshots
        kwargs["Marker"] = marker


def _prune_snapshots(
    deps: RdsControlDependencies, instance_id: str
) -> tuple[list[str], list[dict[str, str]]]:
    """Delete every available snapshot beyond the newest SNAPSHOTS_TO_KEEP.

    Best-effort per snapshot: one failed delete is reported and the loop
    moves on.  A snapshot already gone counts as pruned.
    """
    pruned: list[str] = []
    failures: list[dict[str, str]] = []
    for stale in newest_first(_list_snapshots(deps, instance_id))[SNAPSHOTS_TO_KEEP:]:
        try:
            deps.rds.delete_db_snapshot(DBSnapshotIdentifier=stale.snapshot_id)
        except ClientError as exc:
            if error_code(exc) == _SNAPSHOT_NOT_FOUND:
                pruned.append(stale.snapshot_id)
                continue
            logger.exception("Failed to prune snapshot", snapshot_id=stale.snapshot_id)
            failures.append({"id": stale.snapshot_id, "error": error_code(exc) or str(exc)})
        except Exception as exc:
            logger.exception("Failed to prune snapshot", snapshot_id=stale.snapshot_id)
            failures.append({"id": stale.snapshot_id, "error": str(exc)})
        else:
            pruned.append(stale.snapshot_id)
    return pruned, failures


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def status(deps: RdsControlDependencies) -> dict[str, Any]:
    db = _describe_instance(deps, _instance_id(deps))
    return {
        "status": db.get("DBInstanceStatus"),
        "endpoint": (db.get("Endpoint") or {}).get("Address"),
    }


def start(deps: RdsControlDependencies) -> dict[str, Any]:
    instance_id = _instance_id(deps)
    _request_power_change(
        deps,
        instance_id,
        deps.rds.start_db_instance,
        already=frozenset({PowerState.AVAILABLE, PowerState.STARTING}),
    )
    shutdown_at = _arm_timer(deps)
    return {"ok": True, **TimerState(shutdown_at).to_dict()}


def stop(deps: RdsControlDependencies) -> dict[str, Any]:
    """Also the payload of the auto-shutdown schedule, so it runs cold."""
    instance_id = _instance_id(deps)
    try:
        _request_power_change(
            deps,
            instance_id,
            deps.rds.stop_db_instance,
            already=frozenset({PowerState.STOPPED, PowerState.STOPPING}),
        )
    except Exception:
        _rearm_after_failed_stop(deps)
        raise
    _clear_timer(deps)
    return {"ok": True}


def snapshot(deps: RdsControlDependencies) -> dict[str, Any]:
    instance_id = _instance_id(deps)
    snapshot_id = f"{_snapshot_prefix(instance_id)}-{epoch_millis(_now_utc())}"
    deps.rds.create_db_snapshot(DBInstanceIdentifier=instance_id, DBSnapshotIdentifier=snapshot_id)
    logger.info("Snapshot requested", snapshot_id=snapshot_id)

    pruned, failures = _prune_snapshots(deps, instance_id)
    if pruned:
        logger.info("Pruned snapshots", pruned=pruned)
    _clear_timer(deps)
    return {"ok": True, "snapshotId": snapshot_id, "pruned": pruned, "pruneFailures": failures}


def snapshots(deps: RdsControlDependencies) -> list[dict[str, Any]]:
    return [s.to_dict() for s in newest_first(_list_snapshots(deps, _instance_id(deps)))]


def restore(deps: RdsControlDependencies) -> dict[str, Any]:
    """Restore the newest snapshot into a new instance.  The source instance is never touched."""
    instance_id = _instance_id(deps)
    available = newest_first(_list_snapshots(deps, instance_id))
    if not available:
        raise NoSnapshotAvailable(instance_id)
    latest = available[0]

    new_instance_id = f"{instance_id}-restored-{epoch_millis(_now_utc())}"
    deps.rds.restore_db_instance_from_db_snapshot(
        DBInstanceIdentifier=new_instance_id,
        DBSnapshotIdentifier=latest.snapshot_id,
        DBInstanceClass=_restore_instance_class(),
    )
    logger.info(
        "Restore requested", new_instance_id=new_instance_id, snapshot_id=latest.snapshot_id
    )
    return {"ok": True, "newInstanceId": new_instance_id, "fromSnapshot": latest.snapshot_id}


def timer(deps: RdsControlDependencies) -> dict[str, Any]:
    stored = deps.params.get_optional(_shutdown_at_param())
    return TimerState(parse_iso_utc(stored) if stored else None).to_dict()


def extend_timer(deps: RdsControlDependencies) -> dict[str, Any]:
    """Push the auto-shutdown out to now + the timer duration; power state is untouched."""
    shutdown_at = _arm_timer(deps)
    return {"ok": True, **TimerState(shutdown_at).to_dict()}


_OPERATIONS: dict[RdsAction, Callable[[RdsControlDependencies], Any]] = {
    RdsAction.STATUS: status,
    RdsAction.START: start,
    RdsAction.STOP: stop,
    RdsAction.SNAPSHOT: snapshot,
    RdsAction.SNAPSHOTS: snapshots,
    RdsAction.RESTORE: restore,
    RdsAction.TIMER: timer,
    RdsAction.EXTEND_TIMER: extend_timer,
}


def _parse_action(raw: str | None) -> RdsAction:
    if raw is None:
        raise InvalidInvocation("Unable to determine action")
    try:
        return RdsAction(raw)
    except ValueError as exc:
        raise InvalidInvocation(f"Unknown action: {raw}") from exc


@logger.inject_lambda_context(clear_state=True, log_event=False)
@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], _context: Any) -> Any:
    is_http = is_http_event(event or {})
    try:
        invocation = parse_invocation(event, routes=ROUTES)
        action = _parse_action(invocation.action)
        logger.append_keys(action=action.value)
        logger.info("Determined action")
        result = _OPERATIONS[action](_dependencies())
        logger.info("Action complete", result=result)
        return render(is_http, result)
    except AnalyticsError as exc:
        logger.warning("Action rejected", error=str(exc), code=exc.code)
        return render_exception(is_http, exc)
    except ClientError as exc:
        logger.exception("AWS client error in rds-control")
        return render_error(is_http, 500, "AWS_CLIENT_ERROR", str(exc))
    except Exception as exc:
        logger.exception("Unhandled rds-control error")
        return render_error(is_http, 500, "INTERNAL_ERROR", str(exc) or "Internal server error")
