"""Tests for job type definitions."""

from bulkops.jobs.types import ErrorKind, ErrorSeverity, ItemStatus, JobKind, JobStatus


class TestJobKind:
    def test_all_kinds_exist(self):
        assert JobKind.RESEARCH.value == "research"
        assert JobKind.CATEGORIZATION.value == "categorization"
        assert JobKind.PREPROCESSING.value == "preprocessing"
        assert JobKind.EMPLOYEE_COUNT.value == "employee_count"
        assert JobKind.TRIAGE.value == "triage"
        assert JobKind.PROSPECT_PROCESSING.value == "prospect_processing"


class TestStatuses:
    def test_terminal_job_statuses(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.PROCESSING.is_terminal

    def test_terminal_item_statuses(self):
        assert ItemStatus.COMPLETED.is_terminal
        assert ItemStatus.FAILED.is_terminal
        assert not ItemStatus.PENDING.is_terminal
        assert not ItemStatus.PROCESSING.is_terminal


class TestErrorSeverity:
    def test_job_fatal_kinds(self):
        for kind in (
            ErrorKind.AUTH,
            ErrorKind.QUOTA_EXCEEDED,
            ErrorKind.NOT_FOUND,
            ErrorKind.MODEL_UNAVAILABLE,
        ):
            assert kind.severity == ErrorSeverity.JOB

    def test_transient_kinds(self):
        for kind in (
            ErrorKind.RATE_LIMIT,
            ErrorKind.TIMEOUT,
            ErrorKind.NETWORK,
            ErrorKind.DNS,
            ErrorKind.SERVER_ERROR,
        ):
            assert kind.severity == ErrorSeverity.TRANSIENT

    def test_item_fatal_kinds(self):
        assert ErrorKind.INVALID_INPUT.severity == ErrorSeverity.ITEM
        assert ErrorKind.UNKNOWN.severity == ErrorSeverity.ITEM
