"""
analytics_core.parameters — SSM Parameter Store access for small string state.

Holds the managed instance id, the shutdown-at timestamp and the import
cursor.  Reads and writes are atomic per key, last-write-wins.

Deletes are idempotent: a missing parameter is treated as already deleted.
"""

from __future__ import annotations

import os
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

logger = Logger(service="analytics-core")

_PARAMETER_NOT_FOUND = "ParameterNotFound"


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_not_found(exc: ClientError) -> bool:
    return error_code(exc) == _PARAMETER_NOT_FOUND


class ParameterStore:
    """Thin wrapper over an SSM client with not-found aware helpers."""

    def __init__(self, *, ssm_client: Any = None) -> None:
        self._ssm: Any = ssm_client or boto3.client(
            "ssm", region_name=os.environ.get("AWS_REGION", "eu-west-2")
        )

    def get(self, name: str) -> str:
        """Return the parameter value.  Raises ClientError(ParameterNotFound) if absent."""
        response = self._ssm.get_parameter(Name=name)
        return str(response["Parameter"]["Value"])

    def get_optional(self, name: str) -> str | None:
        """Return the parameter value, or None if it does not exist."""
        try:
            return self.get(name)
        except ClientError as exc:
            if _is_not_found(exc):
                return None
            raise

    def put(self, name: str, value: str) -> None:
        self._ssm.put_parameter(Name=name, Value=value, Type="String", Overwrite=True)

    def put_if_absent(self, name: str, value: str) -> bool:
        """Create the parameter only if it does not exist yet.

        Returns True when written, False when a value was already present.
        """
        try:
            self._ssm.put_parameter(Name=name, Value=value, Type="String", Overwrite=False)
        except ClientError as exc:
            if error_code(exc) == "ParameterAlreadyExists":
                return False
            raise
        return True

    def delete(self, name: str) -> bool:
        """Delete the parameter.  Returns False if it was already gone."""
        try:
            self._ssm.delete_parameter(Name=name)
        except ClientError as exc:
            if _is_not_found(exc):
                logger.debug("Parameter already absent", parameter=name)
                return False
            raise
        return True
