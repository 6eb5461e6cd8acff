"""
Logging and operation metrics for the cluster PKI.
"""
import json
import logging
import logging.handlers
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict
from contextlib import contextmanager
import threading


@dataclass
class LogEntry:
    """Structured log entry for JSON logging."""
    timestamp: str
    level: str
    logger_name: str
    message: str
    module: str
    function: str
    line_number: int
    thread_id: int
    process_id: int
    extra_data: Optional[Dict[str, Any]] = None
    exception_info: Optional[Dict[str, Any]] = None


@dataclass
class OperationMetric:
    """Timing of one PKI operation (issue, sign, audit...)."""
    operation: str
    duration_ms: float
    timestamp: str
    success: bool
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    extra_data: Optional[Dict[str, Any]] = None


@dataclass
class ErrorMetric:
    """A failure surfaced to the operator."""
    error_kind: str
    error_message: str
    operation: Optional[str]
    subject: Optional[str]
    role: Optional[str]
    retryable: bool
    timestamp: str
    stack_trace: Optional[str] = None


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created).isoformat(),
            level=record.levelname,
            logger_name=record.name,
            message=record.getMessage(),
            module=record.module,
            function=record.funcName,
            line_number=record.lineno,
            thread_id=record.thread,
            process_id=record.process,
            extra_data=getattr(record, 'extra_data', None)
        )

        if record.exc_info:
            log_entry.exception_info = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        return json.dumps(asdict(log_entry), default=str)


class PerformanceMonitor:
    """Collects timings of PKI operations."""

    def __init__(self):
        self.metrics: List[OperationMetric] = []
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def measure_operation(self, operation: str, extra_data: Optional[Dict[str, Any]] = None):
        """Context manager to measure operation duration."""
        start_time = time.time()
        success = True
        error_kind = None
        error_message = None

        try:
            yield
        except Exception as e:
            success = False
            error_kind = getattr(e, 'kind', type(e).__name__)
            error_message = str(e)
            raise
        finally:
            duration_ms = (time.time() - start_time) * 1000

            metric = OperationMetric(
                operation=operation,
                duration_ms=duration_ms,
                timestamp=datetime.now().isoformat(),
                success=success,
                error_kind=error_kind,
                error_message=error_message,
                extra_data=extra_data
            )

            with self.lock:
                self.metrics.append(metric)

            self.logger.debug(
                f"Operation metric: {operation}",
                extra={
                    'extra_data': {
                        'operation': operation,
                        'duration_ms': duration_ms,
                        'success': success,
                        'error_kind': error_kind,
                        **(extra_data if extra_data else {})
                    }
                }
            )

    def get_metrics(self, operation: Optional[str] = None) -> List[OperationMetric]:
        """Get recorded metrics, optionally for one operation."""
        with self.lock:
            filtered_metrics = self.metrics.copy()

        if operation:
            filtered_metrics = [m for m in filtered_metrics if m.operation == operation]

        return filtered_metrics

    def get_operation_stats(self, operation: str) -> Dict[str, Any]:
        """Get statistics for a specific operation."""
        metrics = self.get_metrics(operation=operation)

        if not metrics:
            return {}

        durations = [m.duration_ms for m in metrics]
        success_count = sum(1 for m in metrics if m.success)

        return {
            'operation': operation,
            'total_calls': len(metrics),
            'success_count': success_count,
            'failure_count': len(metrics) - success_count,
            'avg_duration_ms': sum(durations) / len(durations),
            'max_duration_ms': max(durations)
        }


class ErrorTracker:
    """Keeps the failures surfaced by CLI commands and the signing service."""

    def __init__(self):
        self.errors: List[ErrorMetric] = []
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def track_error(self, error: Exception, operation: Optional[str] = None):
        """Record an error occurrence and log it with its PKI context."""
        error_metric = ErrorMetric(
            error_kind=getattr(error, 'kind', type(error).__name__),
            error_message=str(error),
            operation=getattr(error, 'operation', None) or operation,
            subject=getattr(error, 'subject', None),
            role=getattr(error, 'role', None),
            retryable=getattr(error, 'retryable', False),
            timestamp=datetime.now().isoformat(),
            stack_trace=traceback.format_exc()
        )

        with self.lock:
            self.errors.append(error_metric)

        self.logger.error(
            f"Error tracked: {error_metric.error_kind}",
            extra={
                'extra_data': {
                    'error_kind': error_metric.error_kind,
                    'error_message': error_metric.error_message,
                    'operation': error_metric.operation,
                    'subject': error_metric.subject,
                    'role': error_metric.role,
                    'retryable': error_metric.retryable,
                }
            }
        )

    def get_errors(self, error_kind: Optional[str] = None) -> List[ErrorMetric]:
        with self.lock:
            filtered_errors = self.errors.copy()

        if error_kind:
            filtered_errors = [e for e in filtered_errors if e.error_kind == error_kind]

        return filtered_errors

    def get_error_summary(self) -> Dict[str, Any]:
        """Get error summary statistics."""
        errors = self.get_errors()

        if not errors:
            return {'total_errors': 0, 'error_kinds': {}}

        error_kinds = {}
        for error in errors:
            error_kinds[error.error_kind] = error_kinds.get(error.error_kind, 0) + 1

        return {
            'total_errors': len(errors),
            'error_kinds': error_kinds,
            'retryable_errors': sum(1 for e in errors if e.retryable)
        }


class LoggingService:
    """Configures logging handlers and exposes metrics collectors."""

    def __init__(self, config, console: bool = True):
        """Initialize logging service with configuration."""
        self.config = config
        self.console = console
        self.performance_monitor = PerformanceMonitor()
        self.error_tracker = ErrorTracker()
        self._setup_logging()
        self.logger = logging.getLogger(__name__)
        self.logger.debug("Logging service initialized")

    def _setup_logging(self):
        """Install file, error and console handlers on the root logger."""
        log_dir = Path(self.config.log_file_path).parent
        log_dir.mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        root_logger.setLevel(log_level)

        json_formatter = JSONFormatter()
        console_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        file_handler = logging.handlers.RotatingFileHandler(
            filename=self.config.log_file_path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(json_formatter)
        file_handler.setLevel(log_level)
        root_logger.addHandler(file_handler)

        error_log_path = str(Path(self.config.log_file_path).with_suffix('.errors.log'))
        error_handler = logging.handlers.RotatingFileHandler(
            filename=error_log_path,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
            encoding='utf-8'
        )
        error_handler.setFormatter(json_formatter)
        error_handler.setLevel(logging.ERROR)
        root_logger.addHandler(error_handler)

        if self.console:
            # stderr keeps command output on stdout parseable
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(console_formatter)
            console_handler.setLevel(log_level)
            root_logger.addHandler(console_handler)

    def log_with_context(self, level: str, message: str, **context):
        """Log message with additional context data."""
        logger = logging.getLogger('clusterpki')
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message, extra={'extra_data': context})

    def measure_performance(self, operation: str, extra_data: Optional[Dict[str, Any]] = None):
        """Get performance measurement context manager."""
        return self.performance_monitor.measure_operation(operation, extra_data)

    def track_error(self, error: Exception, operation: Optional[str] = None):
        """Track an error occurrence."""
        self.error_tracker.track_error(error, operation)

    def get_performance_stats(self, operation: Optional[str] = None) -> Dict[str, Any]:
        """Get performance statistics."""
        if operation:
            return self.performance_monitor.get_operation_stats(operation)
        all_metrics = self.performance_monitor.get_metrics()
        operations = set(m.operation for m in all_metrics)
        return {
            op: self.performance_monitor.get_operation_stats(op)
            for op in operations
        }

    def get_error_summary(self) -> Dict[str, Any]:
        return self.error_tracker.get_error_summary()

    def get_health_status(self) -> Dict[str, Any]:
        """Get overall health status of the logging system."""
        try:
            logging.getLogger('health_check').debug("Health check test log entry")
            return {
                'status': 'healthy',
                'log_file_writable': True,
                'recorded_errors': self.error_tracker.get_error_summary().get('total_errors', 0),
                'recorded_operations': len(self.performance_monitor.get_metrics()),
                'timestamp': datetime.now().isoformat()
            }
        except Exception as e:
            return {
                'status': 'unhealthy',
                'error': str(e),
                'timestamp': datetime.now().isoformat()
            }
