"""
analytics_core — Shared contracts for the admin dashboard Lambdas.

The only permitted way for rds-control and the import pipeline to reach
Parameter Store, EventBridge Scheduler, Bedrock embeddings and PostgreSQL.
"""

from analytics_core.exceptions import (
    AnalyticsError,
    ImportCursorMissing,
    InvalidInvocation,
    InvalidRecord,
    NoSnapshotAvailable,
    UnknownRoute,
)
from analytics_core.invocation import Invocation, parse_invocation, render, render_exception
from analytics_core.parameters import ParameterStore
from analytics_core.scheduler import OneShotScheduler

__all__ = [
    "AnalyticsError",
    "ImportCursorMissing",
    "InvalidInvocation",
    "InvalidRecord",
    "Invocation",
    "NoSnapshotAvailable",
    "OneShotScheduler",
    "ParameterStore",
    "UnknownRoute",
    "parse_invocation",
    "render",
    "render_exception",
]
