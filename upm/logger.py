"""
Logging and notification system for Unified Package Manager
Handles file-based logging and notification listeners
"""

import logging
import os
from typing import Callable, List, Optional

from upm.config import DEFAULT_DATA_DIR

NotificationListener = Callable[[str, str, str], None]  # title, message, type


class LoggerManager:
    """Manages logging and notifications for UPM"""

    def __init__(self, log_dir: str = "logs", log_file: str = "upm.log",
                 level: str = "INFO", name: str = "UPM"):
        """Initialize logger with file and console handlers"""
        self.log_dir = str(log_dir)
        self.log_file = log_file
        self.log_path = os.path.join(self.log_dir, log_file)

        os.makedirs(self.log_dir, exist_ok=True)

        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        # File handler
        file_handler = logging.FileHandler(self.log_path)
        file_handler.setLevel(logging.DEBUG)

        # Console handler
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level.upper())

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        file_handler.setFormatter(formatter)
        console_handler.setFormatter(formatter)

        # Replace handlers left by a previous manager with the same name
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()
        self.logger.addHandler(file_handler)
        self.logger.addHandler(console_handler)
        self._handlers = [file_handler, console_handler]
        self._console_handler = console_handler

        self._listeners: List[NotificationListener] = []

    def set_level(self, level: str):
        """Change the console level; the log file keeps everything down to DEBUG"""
        self._console_handler.setLevel(level.upper())

    def log_info(self, message: str):
        """Log info message"""
        self.logger.info(message)

    def log_warning(self, message: str):
        """Log warning message"""
        self.logger.warning(message)

    def log_error(self, message: str, error: Optional[Exception] = None):
        """Log error message with optional exception details"""
        if error:
            self.logger.error(f"{message}: {str(error)}", exc_info=True)
        else:
            self.logger.error(message)

    def log_debug(self, message: str):
        """Log debug message"""
        self.logger.debug(message)

    def log_success(self, message: str):
        """Log success message"""
        self.logger.info(f"SUCCESS: {message}")

    # ==================== Resolution Logging ====================

    def log_resolve(self, operation_type: str, requested: List[str]):
        self.log_info(f"Resolving {operation_type} of: {', '.join(requested) or '(all installed)'}")

    def log_resolution_failure(self, error: Exception):
        message = f"Resolution failed: {error}"
        self.log_error(message)
        self.emit_notification("Resolution Failed", message, "error")

    def log_plan(self, plan):
        self.log_info(f"Plan for {plan.operation_type.value} ({len(plan.steps)} steps):\n{plan.describe()}")

    # ==================== Transaction Logging ====================

    def log_operation_start(self, operation, snapshot):
        self.log_info(
            f"Operation {operation.id} ({operation.operation_type.value}) running; "
            f"snapshot {snapshot.id} [{snapshot.commit_hash[:12]}]"
        )

    def log_step(self, step, attempt: int = 1):
        suffix = f" (attempt {attempt})" if attempt > 1 else ""
        self.log_info(f"Step: {step}{suffix}")

    def log_step_retry(self, step, error: Exception, attempt: int):
        self.log_warning(f"Step '{step}' failed on attempt {attempt}, retrying: {error}")

    def log_rollback(self, operation, reason: str):
        self.log_warning(f"Rolling back operation {operation.id}: {reason}")

    def log_rollback_step(self, description: str):
        self.log_info(f"  rollback: {description}")

    def log_operation_finished(self, operation):
        status = operation.status.value
        if operation.error_message:
            message = f"Operation {operation.id} {status}: {operation.error_message}"
            self.log_error(message)
            self.emit_notification("Operation Failed", message, "error")
        else:
            message = f"Operation {operation.id} {status}"
            self.log_success(message)
            self.emit_notification("Operation Completed", message, "success")

    def log_partial_failure(self, error: Exception):
        message = f"Manual intervention required: {error}"
        self.log_error(message)
        self.emit_notification("Rollback Failed", message, "error")

    # ==================== Repository Logging ====================

    def log_refresh(self, backend_id: str, repository: str, count: int):
        self.log_info(f"Refreshed {backend_id} repository {repository}: {count} packages")

    def log_repository_status(self, repo_name: str, enabled: bool):
        """Log repository status change"""
        status = "enabled" if enabled else "disabled"
        self.log_info(f"Repository {repo_name} {status}")

    # ==================== Notification Methods ====================

    def add_listener(self, listener: NotificationListener):
        """Register a callback receiving (title, message, type)"""
        self._listeners.append(listener)

    def emit_notification(self, title: str, message: str, notification_type: str = "info"):
        """Send a notification to every listener

        Args:
            title: Notification title
            message: Notification message
            notification_type: Type of notification (success, error, warning, info)
        """
        for listener in self._listeners:
            listener(title, message, notification_type)

    # ==================== Log File Management ====================

    def read_log_file(self, lines: int = 100) -> str:
        """Read the last N lines from the log file"""
        try:
            with open(self.log_path, 'r') as f:
                all_lines = f.readlines()
                return ''.join(all_lines[-lines:])
        except FileNotFoundError:
            return "Log file not found"

    def close(self):
        """Detach and close this manager's handlers"""
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []


# Global logger instance
_logger_instance = None


def get_logger(log_dir: Optional[str] = None, level: str = "INFO") -> LoggerManager:
    """Get or create the global logger instance"""
    global _logger_instance
    if _logger_instance is None:
        if log_dir is None:
            log_dir = str(DEFAULT_DATA_DIR / "logs")
        _logger_instance = LoggerManager(log_dir=log_dir, level=level)
    return _logger_instance


def set_logger(manager: Optional[LoggerManager]):
    """Replace the global logger instance (None resets it)"""
    global _logger_instance
    _logger_instance = manager
