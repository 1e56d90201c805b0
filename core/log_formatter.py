"""
Enhanced Log Formatter for the Google Drive MCP server

Prefixes each record with the subsystem it came from and tidies up the most
frequent messages so the console matches the safe_print output of main.py.
"""
import logging
import os
import re
import sys
from typing import Optional

LOG_FILE_ENV = "GDRIVE_MCP_LOG_FILE"


class EnhancedLogFormatter(logging.Formatter):
    """Custom log formatter that adds ASCII prefixes and visual enhancements to log messages."""

    # Color codes for terminals that support ANSI colors
    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
        'RESET': '\033[0m'      # Reset
    }

    ASCII_PREFIXES = {
        'auth.oauth_proxy_handlers': '[OAUTH]',
        'auth.google_oauth_client': '[GOOGLE]',
        'auth.oauth_error_handling': '[SECURITY]',
        'auth.bearer_auth_middleware': '[AUTH]',
        'auth.credential_store': '[CREDS]',
        'core.session_registry': '[SESSIONS]',
        'core.sse_transport': '[SSE]',
        'core.streamable_http': '[HTTP]',
        'core.server': '[SERVER]',
        'core.utils': '[UTILS]',
        'gdrive.drive_tools': '[DRIVE]',
    }

    def __init__(self, use_colors: bool = True, *args, **kwargs):
        """
        Initialize the formatter.

        Args:
            use_colors: Whether to use ANSI color codes (default: True)
        """
        super().__init__(*args, **kwargs)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with ASCII prefixes and enhanced styling."""
        service_prefix = self._get_ascii_prefix(record.name, record.levelname)
        formatted_msg = self._enhance_message(record.getMessage())

        if self.use_colors:
            color = self.COLORS.get(record.levelname, '')
            reset = self.COLORS['RESET']
            return f"{service_prefix} {color}{formatted_msg}{reset}"
        return f"{service_prefix} {formatted_msg}"

    def _get_ascii_prefix(self, logger_name: str, level_name: str) -> str:
        """Get ASCII-safe prefix for Windows compatibility."""
        return self.ASCII_PREFIXES.get(logger_name, f'[{level_name}]')

    def _enhance_message(self, message: str) -> str:
        """Enhance the log message with better formatting."""
        # Session lifecycle messages
        match = re.search(r"Session (registered|removed): (\w+) \(([\w-]+)\), (\d+) active", message)
        if match:
            action, session_id, family, active = match.groups()
            verb = "opened" if action == "registered" else "closed"
            return f"{family} session {session_id[:8]} {verb} ({active} active)"

        # Credentials directory messages
        if "Credentials directory permissions check passed" in message:
            path = message.split(": ")[-1]
            return f"Credentials directory verified: {path}"

        return message


def setup_enhanced_logging(log_level: int = logging.INFO, use_colors: bool = True) -> None:
    """
    Set up enhanced logging with ASCII prefix formatter for the entire application.

    Args:
        log_level: The logging level to use (default: INFO)
        use_colors: Whether to use ANSI colors (default: True)
    """
    formatter = EnhancedLogFormatter(use_colors=use_colors)
    root_logger = logging.getLogger()

    console_handlers = [
        h for h in root_logger.handlers
        if isinstance(h, logging.StreamHandler) and getattr(h.stream, 'name', None) in ['<stderr>', '<stdout>']
    ]
    for handler in console_handlers:
        handler.setFormatter(formatter)

    if not console_handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.setLevel(log_level)
        root_logger.addHandler(console_handler)


def configure_file_logging(logger_name: Optional[str] = None) -> bool:
    """
    Add a detailed file handler when GDRIVE_MCP_LOG_FILE names a log file.

    Args:
        logger_name: Optional name for the logger (defaults to root logger)

    Returns:
        bool: True if file logging was configured, False if skipped
    """
    log_file_path = os.getenv(LOG_FILE_ENV)
    if not log_file_path:
        return False

    log_file_path = os.path.abspath(os.path.expanduser(log_file_path))
    try:
        file_handler = logging.FileHandler(log_file_path, mode='a')
    except OSError as e:
        sys.stderr.write(f"CRITICAL: Failed to set up file logging to '{log_file_path}': {e}\n")
        return False

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(process)d - %(threadName)s '
        '[%(module)s.%(funcName)s:%(lineno)d] - %(message)s'
    ))
    target_logger = logging.getLogger(logger_name)
    target_logger.addHandler(file_handler)
    target_logger.debug(f"Detailed file logging configured to: {log_file_path}")
    return True
