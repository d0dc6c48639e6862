#!/usr/bin/env python3
"""
import_cursor.py — Operator tooling for the chat-log import pipeline.

import-generate refuses to run until its cursor parameter exists; `init`
creates it without ever overwriting an existing value.  `replay` re-invokes
import-execute for a staged batch that failed to load (staged objects expire
after one day).

Usage:
    uv run python scripts/import_cursor.py init [--value 2026-01-01T00:00:00.000Z#0]
    uv run python scripts/import_cursor.py show
    uv run python scripts/import_cursor.py set --value <cursor> --force
    uv run python scripts/import_cursor.py replay --key import-staging/<millis>.json
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

import boto3
from analytics_core import ParameterStore
from analytics_core.models import STAGING_PREFIX

DEFAULT_CURSOR_PARAM = "/nakom.is/analytics/CVCHAT/last-imported-timestamp"
DEFAULT_EXECUTE_FUNCTION = "nakom-admin-import-execute"
# Sorts before every real "<ISO timestamp>#<suffix>" key.
DEFAULT_INITIAL_CURSOR = "1970-01-01T00:00:00.000Z#0"


def get_aws_region() -> str:
    region = os.environ.get("AWS_REGION", "").strip()
    if not region:
        raise RuntimeError("AWS_REGION environment variable not set")
    return region


def resolve_cursor_param() -> str:
    return os.environ.get("IMPORT_CURSOR_PARAM", DEFAULT_CURSOR_PARAM)


def init_cursor(params: ParameterStore, *, name: str, value: str) -> bool:
    return params.put_if_absent(name, value)


def replay_batch(
    lambda_client: Any,
    *,
    function_name: str,
    bucket: str,
    key: str,
) -> dict[str, Any]:
    """Synchronously re-run import-execute on an existing staged batch."""
    if not key.startswith(STAGING_PREFIX):
        raise ValueError(f"Staging key must start with {STAGING_PREFIX!r}")
    response = lambda_client.invoke(
        FunctionName=function_name,
        InvocationType="RequestResponse",
        Payload=json.dumps({"stagingBucket": bucket, "stagingKey": key}).encode("utf-8"),
    )
    return json.loads(response["Payload"].read() or b"{}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--param",
        default=resolve_cursor_param(),
        help="SSM parameter holding the import cursor",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init = subparsers.add_parser("init", help="Create the cursor if it does not exist")
    init.add_argument("--value", default=DEFAULT_INITIAL_CURSOR, help="Initial cursor value")

    subparsers.add_parser("show", help="Print the current cursor")

    set_cmd = subparsers.add_parser("set", help="Overwrite the cursor (rewind or skip ahead)")
    set_cmd.add_argument("--value", required=True, help="New cursor value")
    set_cmd.add_argument("--force", action="store_true", help="Confirm the overwrite")

    replay = subparsers.add_parser("replay", help="Re-run import-execute on a staged batch")
    replay.add_argument("--key", required=True, help="Staging object key")
    replay.add_argument(
        "--bucket",
        default=os.environ.get("STAGING_BUCKET", "nakomis-analytics-staging"),
        help="Staging bucket name",
    )
    replay.add_argument(
        "--function-name",
        default=os.environ.get("IMPORT_EXECUTE_FUNCTION_NAME", DEFAULT_EXECUTE_FUNCTION),
        help="import-execute function name",
    )
    return parser.parse_args(argv)


def cmd_init(args: argparse.Namespace, params: ParameterStore) -> int:
    if init_cursor(params, name=args.param, value=args.value):
        print(f"Cursor initialised: {args.param} = {args.value}")
    else:
        print(f"Cursor already set: {args.param} = {params.get(args.param)}")
    return 0


def cmd_show(args: argparse.Namespace, params: ParameterStore) -> int:
    value = params.get_optional(args.param)
    if value is None:
        print(f"Cursor not initialised: {args.param}", file=sys.stderr)
        return 1
    print(value)
    return 0


def cmd_set(args: argparse.Namespace, params: ParameterStore) -> int:
    if not args.force:
        print("Refusing to overwrite the cursor without --force.", file=sys.stderr)
        return 2
    params.put(args.param, args.value)
    print(f"Cursor set: {args.param} = {args.value}")
    return 0


def cmd_replay(args: argparse.Namespace, lambda_client: Any) -> int:
    try:
        result = replay_batch(
            lambda_client,
            function_name=args.function_name,
            bucket=args.bucket,
            key=args.key,
        )
    except ValueError as exc:
        print(f"Replay refused: {exc}", file=sys.stderr)
        return 2
    print(json.dumps(result, indent=2))
    return 1 if "error" in result else 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    region = get_aws_region()
    if args.command == "replay":
        return cmd_replay(args, boto3.client("lambda", region_name=region))
    params = ParameterStore(ssm_client=boto3.client("ssm", region_name=region))
    if args.command == "init":
        return cmd_init(args, params)
    if args.command == "show":
        return cmd_show(args, params)
    if args.command == "set":
        return cmd_set(args, params)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
