"""Logging shared by the gcepool HTTP surface, the GCE provider and Cloud DNS.

All three log to stdout and to one rotating file, ``gcepool.log``. Logger
names carry a service prefix (``API``, ``PROVIDER``, ``DNS``) so one grep
separates request traffic from remote operation polling.
"""
import logging
import logging.handlers
import sys
import os
from pathlib import Path
from typing import Optional

# Google client libraries log every token refresh and HTTP retry at INFO
_CHATTY_LIBRARIES = ("google.auth", "google.api_core", "urllib3")


class UnifiedLogger:
    """Unified logger configuration for gcepool services."""

    SERVICE_API = "API"
    SERVICE_PROVIDER = "PROVIDER"
    SERVICE_DNS = "DNS"

    # last module name segment -> service
    _SERVICE_BY_MODULE = {
        "main": SERVICE_API,
        "cloud_dns": SERVICE_DNS,
        "provider": SERVICE_PROVIDER,
        "operations": SERVICE_PROVIDER,
        "connection": SERVICE_PROVIDER,
    }

    _configured = False

    @classmethod
    def configure(
        cls,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        log_dir: Optional[Path] = None,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5
    ) -> None:
        """Install the console and rotating file handlers once per process.

        Arguments win over the GCEPOOL_LOG_LEVEL, GCEPOOL_LOG_FILE and
        GCEPOOL_LOG_DIR env vars; GCEPOOL_LOG_MAX_BYTES and
        GCEPOOL_LOG_BACKUP_COUNT override the rotation arguments.
        """
        if cls._configured:
            return

        level_name = (log_level or os.environ.get("GCEPOOL_LOG_LEVEL", "INFO")).upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            level_name, level = "INFO", logging.INFO

        max_bytes = int(os.environ.get("GCEPOOL_LOG_MAX_BYTES", max_bytes))
        backup_count = int(os.environ.get("GCEPOOL_LOG_BACKUP_COUNT", backup_count))

        if log_file:
            log_path = Path(log_file)
        elif os.environ.get("GCEPOOL_LOG_FILE"):
            log_path = Path(os.environ["GCEPOOL_LOG_FILE"])
        else:
            log_path = Path(log_dir or os.environ.get("GCEPOOL_LOG_DIR", "./logs")) / "gcepool.log"

        formatter = logging.Formatter(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logging.warning(f"Failed to create file handler for {log_path}: {e}")

        if level > logging.DEBUG:
            for name in _CHATTY_LIBRARIES:
                logging.getLogger(name).setLevel(logging.WARNING)

        cls._configured = True
        logging.info(f"gcepool logging configured (level={level_name}, file={log_path})")

    @classmethod
    def get_logger(cls, module_name: str, service: Optional[str] = None) -> logging.Logger:
        """Logger named ``<SERVICE>.<module>``, inferring the service when not given."""
        if not cls._configured:
            cls.configure()

        short = module_name.split('.')[-1]
        service = service or cls._SERVICE_BY_MODULE.get(short)
        return logging.getLogger(f"{service}.{short}" if service else short)

    @classmethod
    def log_request(cls, logger: logging.Logger, method: str, path: str,
                    status_code: int, duration_ms: float = None):
        duration_str = f" ({duration_ms:.2f}ms)" if duration_ms else ""
        logger.info(f"HTTP {method} {path} -> {status_code}{duration_str}")

    @classmethod
    def log_error(cls, logger: logging.Logger, operation: str, error: Exception,
                  context: Optional[dict] = None):
        context_str = f" | Context: {context}" if context else ""
        logger.error(f"{operation} failed: {error}{context_str}", exc_info=True)

    @classmethod
    def log_operation(cls, logger: logging.Logger, pool_name: str, operation_name: str,
                      status: str, duration_ms: float = None):
        """Record a remote compute operation reaching ``status`` after ``duration_ms`` of polling."""
        duration_str = f" ({duration_ms:.2f}ms)" if duration_ms else ""
        logger.debug(f"[{pool_name}] operation {operation_name} -> {status}{duration_str}")
