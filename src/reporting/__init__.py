"""Teardown reports and connection summaries."""

from reporting.report import (
    ALREADY_ABSENT,
    DELETED,
    FAILED,
    SKIPPED,
    ResourceOutcome,
    TeardownReport,
    connection_summary,
    format_connection_summary,
)

__all__ = [
    'ALREADY_ABSENT',
    'DELETED',
    'FAILED',
    'SKIPPED',
    'ResourceOutcome',
    'TeardownReport',
    'connection_summary',
    'format_connection_summary',
]
