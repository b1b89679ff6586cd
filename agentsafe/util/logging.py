"""
Structured audit logging for the action governor.
Every governed operation is logged as "Operation: <op>, Status: <status>, Details: {...}".
"""

import logging
from typing import Any, Dict, List, Optional


class StructuredLogger:
    """Structured logger for pipeline, governor, ledger and stream operations."""

    def __init__(self, name: str = "agentsafe"):
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
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_pipeline_run(self, run_id: str, kind: str, verdict: str, reason: str = None, stages: List[str] = None):
        """Log a completed safety pipeline evaluation."""
        log_details = {
            "run_id": run_id,
            "kind": kind,
            "verdict": verdict,
        }
        if reason:
            log_details["reason"] = reason[:100]
        if stages:
            log_details["stages"] = stages

        self.log_operation("pipeline.evaluate", verdict.lower(), log_details)

    def log_action_transition(self, action_id: str, kind: str, old_status: Optional[str], new_status: str, details: Dict[str, Any] = None):
        """Log a queued action lifecycle transition."""
        log_details = {
            "action_id": action_id,
            "kind": kind,
            "from": old_status or "-",
            "to": new_status,
        }
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation(f"action.{new_status.lower()}", "success", log_details)

    def log_rejection(self, operation: str, action_id: Optional[str], code: str, reason: str):
        """Log a typed rejection (expected outcome, not an error)."""
        log_details = {
            "action_id": action_id or "-",
            "code": code,
            "reason": reason[:100] if reason else "",
        }
        self.log_operation(f"{operation}.rejected", "rejected", log_details)

    def log_executor_failure(self, action_id: str, kind: str, error: str, duration_ms: float):
        """Log a downstream executor failure; the action stays retryable."""
        log_details = {
            "action_id": action_id,
            "kind": kind,
            "error": error[:200],
            "duration_ms": round(duration_ms, 2),
            "retryable": True,
        }
        self.log_operation("executor.failed", "failed", log_details, level=logging.ERROR)

    def log_spend(self, operation: str, amount_usd: float, spent_today_usd: float, treasury_usd: float, action_id: str = None):
        """Log a budget ledger mutation."""
        log_details = {
            "amount_usd": amount_usd,
            "spent_today_usd": spent_today_usd,
            "treasury_usd": treasury_usd,
        }
        if action_id:
            log_details["action_id"] = action_id

        self.log_operation(f"ledger.{operation}", "success", log_details)

    def log_liquidation_alert(self, alert_id: str, event_id: str, health_factor: float, intent: str, per_tx_cap_respected: bool):
        """Log a derived liquidation alert."""
        log_details = {
            "alert_id": alert_id,
            "event_id": event_id,
            "health_factor": health_factor,
            "intent": intent,
            "per_tx_cap_respected": per_tx_cap_respected,
        }
        status = "critical" if per_tx_cap_respected else "critical_over_cap"
        self.log_operation("streams.alert", status, log_details, level=logging.WARNING)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Heartbeat task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Heartbeat task '{task_name}' failed after {duration_ms}ms"

        self.log_operation(f"heartbeat.{task_name}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with payload redaction."""
    if sensitive_fields is None:
        sensitive_fields = ['calldata', 'signature', 'private_key', 'secret', 'token_secret']

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = ['calldata', 'signature', 'private_key', 'secret', 'token_secret']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
