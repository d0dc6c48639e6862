"""
analytics_core.scheduler — One-shot EventBridge Scheduler triggers.

A schedule is registered with an ``at(...)`` expression and
ActionAfterCompletion=DELETE, so it invokes its target once and then removes
itself.  disarm() therefore has to tolerate the schedule already being gone.
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from analytics_core.parameters import error_code

logger = Logger(service="analytics-core")

_NOT_FOUND = "ResourceNotFoundException"
_CONFLICT = "ConflictException"
DEFAULT_GROUP = "default"


def at_expression(when: datetime) -> str:
    """EventBridge Scheduler one-time expression, evaluated in UTC."""
    return f"at({when.astimezone(UTC).strftime('%Y-%m-%dT%H:%M:%S')})"


class OneShotScheduler:
    """Create and delete a single named one-shot schedule."""

    def __init__(self, *, scheduler_client: Any = None, group_name: str = DEFAULT_GROUP) -> None:
        self._scheduler: Any = scheduler_client or boto3.client(
            "scheduler", region_name=os.environ.get("AWS_REGION", "eu-west-2")
        )
        self._group = group_name

    def exists(self, name: str) -> bool:
        try:
            self._scheduler.get_schedule(Name=name, GroupName=self._group)
        except ClientError as exc:
            if error_code(exc) == _NOT_FOUND:
                return False
            raise
        return True

    def disarm(self, name: str) -> bool:
        """Delete the schedule.  Returns False if it did not exist."""
        try:
            self._scheduler.delete_schedule(Name=name, GroupName=self._group)
        except ClientError as exc:
            if error_code(exc) == _NOT_FOUND:
                logger.debug("Schedule already absent", schedule=name)
                return False
            raise
        return True

    def arm(
        self,
        name: str,
        *,
        when: datetime,
        target_arn: str,
        role_arn: str,
        payload: dict[str, Any],
    ) -> None:
        """Replace any existing schedule with one firing once at ``when``.

        A concurrent arm() can recreate the schedule between our delete and
        create; on ConflictException we delete again and retry once.
        """
        self.disarm(name)
        try:
            self._create(name, when=when, target_arn=target_arn, role_arn=role_arn, payload=payload)
        except ClientError as exc:
            if error_code(exc) != _CONFLICT:
                raise
            logger.warning("Schedule recreated concurrently; replacing it", schedule=name)
            self.disarm(name)
            self._create(name, when=when, target_arn=target_arn, role_arn=role_arn, payload=payload)

    def _create(
        self,
        name: str,
        *,
        when: datetime,
        target_arn: str,
        role_arn: str,
        payload: dict[str, Any],
    ) -> None:
        self._scheduler.create_schedule(
            Name=name,
            GroupName=self._group,
            ScheduleExpression=at_expression(when),
            ScheduleExpressionTimezone="UTC",
            FlexibleTimeWindow={"Mode": "OFF"},
            ActionAfterCompletion="DELETE",
            Target={
                "Arn": target_arn,
                "RoleArn": role_arn,
                "Input": json.dumps(payload),
            },
        )
        logger.info("Schedule armed", schedule=name, at=at_expression(when))
