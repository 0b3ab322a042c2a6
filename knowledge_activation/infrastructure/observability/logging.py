import structlog
import logging
import sys
from typing import Dict, Any, Optional, Sequence
from collections import defaultdict
from datetime import datetime
import os
from pydantic import BaseModel

from knowledge_activation.domain.models.activation import ActivatedEntry


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "knowledge-activation"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_activation_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_activation_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add conversation and user ids bound for the current activation call"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    bound = structlog.contextvars.get_contextvars()
    for key in ("conversation_id", "user_id", "message_index"):
        if key in bound and key not in event_dict:
            event_dict[key] = bound[key]

    return event_dict


class ActivationLogger:
    """Structured events for the activation pipeline"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_activation_event(
        self,
        event_type: str,
        conversation_id: str,
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        self.logger.info(
            "activation_event",
            event_type=event_type,
            conversation_id=conversation_id,
            data=data or {},
            **kwargs
        )

    def log_stage_result(
        self,
        conversation_id: str,
        stage: str,
        included: int,
        excluded: int,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log how many candidates survive a pipeline stage"""

        self.logger.debug(
            "stage_result",
            conversation_id=conversation_id,
            stage=stage,
            included=included,
            excluded=excluded,
            details=details or {}
        )

    def log_exclusion(
        self,
        conversation_id: str,
        entry_id: str,
        reason: str,
        score: Optional[float] = None
    ):
        self.logger.debug(
            "activation_excluded",
            conversation_id=conversation_id,
            entry_id=entry_id,
            reason=reason,
            score=score
        )


activation_logger = ActivationLogger("knowledge_activation")


class LatencyStats(BaseModel):
    count: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: float = 0.0

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


class ActivationMetrics:
    """In-process tallies of activation outcomes, mirrored to the log per call"""

    def __init__(self):
        self.reset()

    def reset(self):
        self.calls = 0
        self.processed = 0
        self.latency = LatencyStats()
        self.included_by_method: Dict[str, int] = defaultdict(int)
        self.excluded_by_reason: Dict[str, int] = defaultdict(int)
        self.last_budget_remaining: Optional[int] = None

    def record_activation(
        self,
        entries: Sequence[ActivatedEntry],
        budget_remaining: int,
        duration_ms: float,
    ) -> None:
        """Fold one activation call's processed entries into the running totals"""

        self.calls += 1
        self.processed += len(entries)
        self.latency.add(duration_ms)
        self.last_budget_remaining = budget_remaining

        included: Dict[str, int] = defaultdict(int)
        excluded: Dict[str, int] = defaultdict(int)
        for entry in entries:
            if entry.was_included:
                included[entry.activation_method.value] += 1
            elif entry.exclusion_reason is not None:
                excluded[entry.exclusion_reason.value] += 1

        for method, count in included.items():
            self.included_by_method[method] += count
        for reason, count in excluded.items():
            self.excluded_by_reason[reason] += count

        activation_logger.logger.debug(
            "activation_metrics",
            duration_ms=round(duration_ms, 2),
            processed=len(entries),
            included=dict(included),
            excluded=dict(excluded),
            budget_remaining=budget_remaining,
        )

    def exclusion_rates(self) -> Dict[str, float]:
        """Share of all processed entries lost to each exclusion reason"""
        if not self.processed:
            return {}
        return {reason: count / self.processed for reason, count in self.excluded_by_reason.items()}

    def inclusion_rate(self) -> float:
        if not self.processed:
            return 0.0
        return sum(self.included_by_method.values()) / self.processed

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            "calls": self.calls,
            "processed": self.processed,
            "latency_ms": {
                "count": self.latency.count,
                "avg": self.latency.avg_ms,
                "min": self.latency.min_ms or 0.0,
                "max": self.latency.max_ms,
            },
            "included_by_method": dict(self.included_by_method),
            "excluded_by_reason": dict(self.excluded_by_reason),
            "inclusion_rate": self.inclusion_rate(),
            "exclusion_rates": self.exclusion_rates(),
            "budget_remaining": self.last_budget_remaining,
        }


metrics = ActivationMetrics()
