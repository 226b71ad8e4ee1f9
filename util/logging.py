"""
Structured logging for the chunk database.
Every operation is logged as a single "Operation: ..., Status: ..., Details: {...}" line.
"""

import logging
from typing import Any, Dict, List

# Keys whose values are document text and never logged in full
CONTENT_FIELDS = ['content', 'text', 'keywords']


def _truncate(value: Any, limit: int = 50) -> Any:
    if isinstance(value, str) and len(value) > limit:
        return value[:limit] + "..."
    return value


class StructuredLogger:
    """Structured logger for index, search and persistence operations."""

    def __init__(self, name: str = "chunkdb"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {sanitize_details(details)}"

        self.logger.log(level, message)

    def log_vector_operation(self, operation: str, db_key: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log an insert/remove against the vector index."""
        log_details = {"db_key": db_key}
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details)

    def log_search(self, db_key: str, k: int, candidates: int, clusters: int, returned: int):
        """Log the shape of a clustered search."""
        log_details = {
            "db_key": db_key,
            "k": k,
            "candidates": candidates,
            "clusters": clusters,
            "returned": returned
        }
        self.log_operation("vector.search", "success", log_details)

    def log_persistence_operation(self, operation: str, db_key: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a snapshot save/load/cleanup step."""
        log_details = {"db_key": db_key}
        if details:
            log_details.update(details)

        level = logging.WARNING if status in ("failed", "skipped") else logging.INFO
        self.log_operation(f"persistence.{operation}", status, log_details, level=level)

    def log_integrity_failure(self, db_key: str, reason: str, details: Dict[str, Any] = None):
        """Log an invariant violation that forced the in-memory state to be dropped."""
        log_details = {"db_key": db_key, "reason": reason[:200]}
        if details:
            log_details.update(details)

        self.log_operation("integrity.violation", "dropped", log_details, level=logging.ERROR)


def sanitize_details(details: Dict[str, Any], content_fields: List[str] = None) -> Dict[str, Any]:
    """Truncate long values and document text before they reach a log line."""
    if content_fields is None:
        content_fields = CONTENT_FIELDS

    sanitized = {}
    for k, v in details.items():
        if k in content_fields:
            sanitized[k] = _truncate(v, 20) if isinstance(v, str) else f"[{len(v)} items]" if isinstance(v, (list, tuple)) else v
        elif isinstance(v, dict):
            sanitized[k] = sanitize_details(v, content_fields)
        else:
            sanitized[k] = _truncate(v, 100)
    return sanitized


# Global logger instance
logger = StructuredLogger()
