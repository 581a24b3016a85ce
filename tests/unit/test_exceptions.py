"""
Unit tests for exceptions module.

Tests cover:
- Exception hierarchy and messages
- Error classification metadata
- classify_exception for engine and foreign exceptions
- RetryConfig validation and delays
- retry_transient behaviour
"""

import logging
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from consolidator.exceptions import (
    NO_RETRY,
    BackendUnavailableError,
    BackupRequiredError,
    ConsolidatorError,
    CorruptPayloadError,
    DuplicateKeyError,
    ErrorCategory,
    ErrorSeverity,
    InvalidTransitionError,
    NoBackupAvailableError,
    PermanentBackendError,
    PreconditionError,
    RecordNotFoundError,
    RetryConfig,
    TransformError,
    TransientBackendError,
    classify_exception,
    retry_transient,
)
from consolidator.models import MigrationMode


class TestConsolidatorError:
    """Tests for the base ConsolidatorError."""

    def test_message_only(self) -> None:
        """Test str() of an error without context."""
        assert str(ConsolidatorError("boom")) == "boom"

    def test_context_is_appended(self) -> None:
        """Test that entity type and record id appear in str()."""
        error = ConsolidatorError("boom", entity_type="clients", record_id="c1")

        assert str(error) == "boom | entity_type=clients | record_id=c1"

    def test_to_dict(self) -> None:
        """Test serialisation includes the classification."""
        data = DuplicateKeyError("clients", "c1").to_dict()

        assert data["error_type"] == "DuplicateKeyError"
        assert data["record_id"] == "c1"
        assert data["classification"]["category"] == "permanent"
        assert data["classification"]["error_code"] == "DUPLICATE_KEY"


class TestHierarchy:
    """Tests for the exception hierarchy."""

    @pytest.mark.parametrize(
        ("error", "base"),
        [
            (TransientBackendError("busy"), ConsolidatorError),
            (BackendUnavailableError("legacy", "gone"), TransientBackendError),
            (DuplicateKeyError("clients", "c1"), PermanentBackendError),
            (RecordNotFoundError("clients", "c1"), PermanentBackendError),
            (CorruptPayloadError("clients", "bad json"), PermanentBackendError),
            (BackupRequiredError(), PreconditionError),
            (NoBackupAvailableError(), PreconditionError),
            (
                InvalidTransitionError(MigrationMode.LEGACY, MigrationMode.MODERN),
                PreconditionError,
            ),
        ],
    )
    def test_subclassing(self, error: Exception, base: type[Exception]) -> None:
        """Test that each error derives from its documented base."""
        assert isinstance(error, base)

    def test_invalid_transition_carries_modes(self) -> None:
        """Test InvalidTransitionError attributes and message."""
        error = InvalidTransitionError(MigrationMode.LEGACY, MigrationMode.MODERN)

        assert error.current_mode == MigrationMode.LEGACY
        assert error.requested_mode == MigrationMode.MODERN
        assert "legacy -> modern" in str(error)

    def test_transform_error_keeps_reason(self) -> None:
        """Test TransformError attributes."""
        error = TransformError("cases", "title: bad", record_id="k1")

        assert error.reason == "title: bad"
        assert error.entity_type == "cases"
        assert error.record_id == "k1"


class TestClassification:
    """Tests for per-class classification metadata."""

    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (TransientBackendError("busy"), ErrorCategory.TRANSIENT),
            (BackendUnavailableError("legacy", "gone"), ErrorCategory.TRANSIENT),
            (DuplicateKeyError("clients", "c1"), ErrorCategory.PERMANENT),
            (TransformError("clients", "bad"), ErrorCategory.PERMANENT),
            (BackupRequiredError(), ErrorCategory.PRECONDITION),
        ],
    )
    def test_category(self, error: ConsolidatorError, category: ErrorCategory) -> None:
        """Test the category of each engine error."""
        assert error.category == category
        assert classify_exception(error) == category

    def test_only_transient_should_retry(self) -> None:
        """Test ErrorCategory.should_retry."""
        assert ErrorCategory.TRANSIENT.should_retry
        assert not ErrorCategory.PERMANENT.should_retry
        assert not ErrorCategory.PRECONDITION.should_retry
        assert not ErrorCategory.INTEGRITY.should_retry

    def test_severity_log_level(self) -> None:
        """Test mapping of severity to logging levels."""
        assert ErrorSeverity.CRITICAL.log_level == logging.CRITICAL
        assert ErrorSeverity.WARNING.log_level == logging.WARNING


class TestClassifyForeignExceptions:
    """Tests for classify_exception on non-engine exceptions."""

    def test_locked_database_is_transient(self) -> None:
        """Test that SQLite lock errors are transient."""
        error = OperationalError("INSERT", {}, Exception("database is locked"))

        assert classify_exception(error) == ErrorCategory.TRANSIENT

    def test_other_operational_error_is_permanent(self) -> None:
        """Test that schema problems are permanent."""
        error = OperationalError("SELECT", {}, Exception("no such table: entity_records"))

        assert classify_exception(error) == ErrorCategory.PERMANENT

    def test_integrity_error_is_permanent(self) -> None:
        """Test that constraint violations are permanent."""
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        assert classify_exception(error) == ErrorCategory.PERMANENT

    @pytest.mark.parametrize("error", [TimeoutError(), ConnectionResetError()])
    def test_timeouts_and_connection_errors_are_transient(self, error: Exception) -> None:
        """Test network-type errors."""
        assert classify_exception(error) == ErrorCategory.TRANSIENT

    @pytest.mark.parametrize("error", [ValueError(), KeyError("x"), RuntimeError()])
    def test_unknown_errors_default_to_permanent(self, error: Exception) -> None:
        """Test that unrecognised errors are never retried."""
        assert classify_exception(error) == ErrorCategory.PERMANENT


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_rejects_zero_attempts(self) -> None:
        """Test validation of max_attempts."""
        with pytest.raises(ValueError, match="max_attempts"):
            RetryConfig(max_attempts=0)

    def test_rejects_max_delay_below_base(self) -> None:
        """Test validation of the delay bounds."""
        with pytest.raises(ValueError, match="max_delay_ms"):
            RetryConfig(base_delay_ms=100, max_delay_ms=10)

    def test_exponential_delay_without_jitter(self) -> None:
        """Test the backoff curve."""
        config = RetryConfig(base_delay_ms=100, jitter_factor=0.0)

        assert config.get_delay_ms(0) == 100
        assert config.get_delay_ms(3) == 800

    def test_delay_is_capped(self) -> None:
        """Test that delays never exceed max_delay_ms."""
        config = RetryConfig(base_delay_ms=100, max_delay_ms=500, jitter_factor=0.0)

        assert config.get_delay_ms(10) == 500

    def test_dict_round_trip(self) -> None:
        """Test to_dict/from_dict."""
        config = RetryConfig(max_attempts=4, base_delay_ms=10.0)

        assert RetryConfig.from_dict(config.to_dict()) == config

    def test_no_retry_is_single_attempt(self) -> None:
        """Test the NO_RETRY policy."""
        assert NO_RETRY.max_attempts == 1


class TestRetryTransient:
    """Tests for retry_transient."""

    @pytest.fixture
    def fast(self) -> RetryConfig:
        return RetryConfig(max_attempts=3, base_delay_ms=0.0, max_delay_ms=0.0, jitter_factor=0.0)

    @pytest.mark.asyncio
    async def test_returns_first_success(self, fast: RetryConfig) -> None:
        """Test that a succeeding operation runs once."""
        operation = AsyncMock(return_value="ok")

        assert await retry_transient(operation, fast) == "ok"
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, fast: RetryConfig) -> None:
        """Test that transient failures are re-issued until success."""
        operation = AsyncMock(side_effect=[TransientBackendError("busy"), "ok"])

        assert await retry_transient(operation, fast) == "ok"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, fast: RetryConfig) -> None:
        """Test that the last transient error propagates unchanged."""
        operation = AsyncMock(side_effect=TransientBackendError("busy"))

        with pytest.raises(TransientBackendError):
            await retry_transient(operation, fast)
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, fast: RetryConfig) -> None:
        """Test that permanent errors propagate immediately."""
        operation = AsyncMock(side_effect=DuplicateKeyError("clients", "c1"))

        with pytest.raises(DuplicateKeyError):
            await retry_transient(operation, fast)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_sleeps_between_attempts(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that the configured backoff is awaited."""
        sleep = AsyncMock()
        monkeypatch.setattr("consolidator.exceptions.asyncio.sleep", sleep)
        config = RetryConfig(max_attempts=2, base_delay_ms=250.0, jitter_factor=0.0)
        operation = AsyncMock(side_effect=[TransientBackendError("busy"), "ok"])

        assert await retry_transient(operation, config) == "ok"
        sleep.assert_awaited_once_with(0.25)
