"""Error classification for copy tasks and batches."""

import logging
import re
from enum import Enum
from typing import Dict, List

from ..models.schemas import CopyError
from .storage import StorageError, TransientStorageError
from .upserts import InvalidTaskError, MissingParentError

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Types of errors that can occur while copying a course structure."""
    MISSING_PARENT = "missing_parent"
    INVALID_TASK = "invalid_task"
    STORAGE_CONFLICT = "storage_conflict"
    STORAGE_ERROR = "storage_error"
    BATCH_ABANDONED = "batch_abandoned"
    UNKNOWN_ERROR = "unknown_error"


class RecoveryStrategy(Enum):
    """What the executor does after an error of a given type."""
    SKIP_TASK = "skip_task"
    RETRY_BATCH = "retry_batch"
    ABANDON_BATCH = "abandon_batch"


class ErrorRecovery:
    """Service for classifying copy errors and determining recovery strategies."""

    # Checked in order; subclasses before their bases
    EXCEPTION_TYPES: List[tuple] = [
        (MissingParentError, ErrorType.MISSING_PARENT),
        (InvalidTaskError, ErrorType.INVALID_TASK),
        (TransientStorageError, ErrorType.STORAGE_CONFLICT),
        (StorageError, ErrorType.STORAGE_ERROR),
    ]

    # Fallback message patterns for exceptions raised by collaborators
    ERROR_PATTERNS: Dict[ErrorType, List[str]] = {
        ErrorType.MISSING_PARENT: [
            r"not found in target",
            r"missing.*parent",
        ],
        ErrorType.STORAGE_CONFLICT: [
            r"write conflict",
            r"timed out",
        ],
        ErrorType.STORAGE_ERROR: [
            r"failed to write",
            r"invalid json",
            r"storage.*error",
        ],
    }

    RECOVERY_STRATEGIES = {
        ErrorType.MISSING_PARENT: RecoveryStrategy.SKIP_TASK,
        ErrorType.INVALID_TASK: RecoveryStrategy.SKIP_TASK,
        ErrorType.STORAGE_CONFLICT: RecoveryStrategy.RETRY_BATCH,
        ErrorType.STORAGE_ERROR: RecoveryStrategy.RETRY_BATCH,
        ErrorType.BATCH_ABANDONED: RecoveryStrategy.ABANDON_BATCH,
        ErrorType.UNKNOWN_ERROR: RecoveryStrategy.SKIP_TASK,
    }

    @classmethod
    def classify_error(cls, exception: Exception) -> ErrorType:
        """
        Classify an exception into an ErrorType.

        Args:
            exception: The exception to classify

        Returns:
            ErrorType enum value
        """
        for exc_type, error_type in cls.EXCEPTION_TYPES:
            if isinstance(exception, exc_type):
                return error_type

        error_message = str(exception).lower()
        for error_type, patterns in cls.ERROR_PATTERNS.items():
            for pattern in patterns:
                if re.search(pattern, error_message, re.IGNORECASE):
                    logger.info(f"Classified error as {error_type.value}: {error_message[:100]}")
                    return error_type

        logger.warning(f"Could not classify error: {error_message[:100]}")
        return ErrorType.UNKNOWN_ERROR

    @classmethod
    def get_recovery_strategy(cls, error_type: ErrorType) -> RecoveryStrategy:
        return cls.RECOVERY_STRATEGIES.get(error_type, RecoveryStrategy.SKIP_TASK)

    @classmethod
    def is_retryable(cls, exception: Exception) -> bool:
        """True when the whole batch should be retried rather than the task skipped."""
        if not isinstance(exception, StorageError):
            return False
        return cls.get_recovery_strategy(cls.classify_error(exception)) == RecoveryStrategy.RETRY_BATCH

    @classmethod
    def task_error(cls, key: str, exception: Exception) -> CopyError:
        """Build the error entry recorded for a single failed task."""
        error_type = cls.classify_error(exception)
        return CopyError(key=key, message=str(exception) or type(exception).__name__, code=error_type.value)

    @classmethod
    def batch_error(cls, batch_index: int, attempts: int, exception: Exception) -> CopyError:
        """Build the error entry recorded when a batch exhausts its retries."""
        return CopyError(
            key=f"batch:{batch_index}",
            message=f"Batch abandoned after {attempts} attempt(s): {exception}",
            code=ErrorType.BATCH_ABANDONED.value,
        )

    @classmethod
    def log_error_recovery(
        cls,
        key: str,
        error_type: ErrorType,
        recovery_strategy: RecoveryStrategy,
        original_error: str,
    ) -> None:
        logger.warning(
            f"Error recovery triggered for {key}:\n"
            f"  Error type: {error_type.value}\n"
            f"  Recovery strategy: {recovery_strategy.value}\n"
            f"  Original error: {original_error[:200]}"
        )
