"""
Structured operation logging for the memory vault.
Key material, plaintext content and ciphertext never reach these logs.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for vector, key, encryption and cross-project operations."""

    def __init__(self, name: str = "memory_vault"):
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

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "error"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_vector_operation(self, operation: str, collection: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector store operation against a named collection."""
        log_details = {"collection": collection}
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details)

    def log_key_event(self, event: str, user_id: str, key_id: str = None, version: int = None, status: str = "success"):
        """Log a key lifecycle event. Only identifiers are recorded."""
        log_details = {"user_id": user_id}
        if key_id is not None:
            log_details["key_id"] = key_id
        if version is not None:
            log_details["version"] = version

        self.log_operation(f"key.{event}", status, log_details)

    def log_encryption_operation(self, operation: str, user_id: str, purpose: str, key_id: str = None, status: str = "success", details: Dict[str, Any] = None):
        """Log an encrypt/decrypt call."""
        log_details = {"user_id": user_id, "purpose": purpose}
        if key_id:
            log_details["key_id"] = key_id
        if details:
            log_details.update(details)

        self.log_operation(f"encryption.{operation}", status, log_details)

    def log_contradiction(self, memory_id: str, contradicting_memory_id: str, topic: str, confidence: float):
        """Log a detected contradiction between two memories."""
        log_details = {
            "memory_id": memory_id,
            "contradicting_memory_id": contradicting_memory_id,
            "topic": topic,
            "confidence": round(confidence, 3)
        }
        self.log_operation("cross_project.contradiction", "detected", log_details)

    def log_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log background task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Task '{task_name}' failed after {duration_ms}ms"

        self.log_operation(f"task.{task_name}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    def debug(self, message: str) -> None:
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()

SENSITIVE_FIELDS = ['content', 'plaintext', 'ciphertext', 'key', 'secret', 'password', 'payload', 'data']


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        sanitized_payload = {}
        for k, v in payload.items():
            if k not in sensitive_fields:
                if isinstance(v, str) and len(v) > 100:
                    sanitized_payload[k] = v[:97] + "..."
                else:
                    sanitized_payload[k] = v
            else:
                sanitized_payload[k] = "[REDACTED]"
        log_details["payload"] = sanitized_payload

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, (bytes, bytearray)):
        return f"<{len(payload)} bytes>"
    elif isinstance(payload, str):
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
