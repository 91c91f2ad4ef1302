"""
decision_sdk
────────────
Stable top-level exports. Import from here, not from sub-modules directly.
Every name exported here is part of the public API and subject to semver.
"""
from decision_sdk.tier0_core.logging import configure_logging, get_logger
from decision_sdk.tier0_core.errors import (
    DecisionError,
    ValidationError,
    NotFoundError,
    ConflictError,
    StoreError,
    ConfigurationError,
)
from decision_sdk.tier0_core.config import get_config, DecisionConfig

from decision_sdk.tier1_runtime.clock import Clock, get_clock, set_clock
from decision_sdk.tier1_runtime.context import (
    get_context,
    set_context,
    new_context,
    RequestContext,
)

from decision_sdk.tier2_storage.store import (
    EntityStore,
    InMemoryEntityStore,
    Stores,
    get_stores,
    set_stores,
)
from decision_sdk.tier2_storage.audit import audit, AuditRecord

from decision_sdk.tier3_decisioning.hashing import deterministic_hash
from decision_sdk.tier3_decisioning.assignment import VariantAssignmentEngine
from decision_sdk.tier3_decisioning.stats import significance, confidence_interval
from decision_sdk.tier3_decisioning.analysis import AnalysisReportBuilder
from decision_sdk.tier3_decisioning.conditions import ConditionEvaluationEngine
from decision_sdk.tier3_decisioning.frequency import FrequencyLimiter
from decision_sdk.tier3_decisioning.rendering import ContentRenderer, get_renderer, set_renderer
from decision_sdk.tier3_decisioning.rules import RuleEvaluationOrchestrator
from decision_sdk.tier3_decisioning.compliance import ComplianceMonitor

from decision_sdk.service import (
    assign_variant,
    record_conversion,
    analyze_test,
    start_test,
    stop_test,
    evaluate_rules,
    get_rule_analytics,
    monitor_compliance,
)

__version__ = "0.1.0"
__all__ = [
    # logging
    "get_logger", "configure_logging",
    # errors
    "DecisionError", "ValidationError", "NotFoundError",
    "ConflictError", "StoreError", "ConfigurationError",
    # config
    "get_config", "DecisionConfig",
    # clock
    "Clock", "get_clock", "set_clock",
    # context
    "get_context", "set_context", "new_context", "RequestContext",
    # storage
    "EntityStore", "InMemoryEntityStore", "Stores", "get_stores", "set_stores",
    # audit
    "audit", "AuditRecord",
    # engines
    "deterministic_hash", "VariantAssignmentEngine",
    "significance", "confidence_interval", "AnalysisReportBuilder",
    "ConditionEvaluationEngine", "FrequencyLimiter",
    "ContentRenderer", "get_renderer", "set_renderer",
    "RuleEvaluationOrchestrator", "ComplianceMonitor",
    # service surface
    "assign_variant", "record_conversion", "analyze_test", "start_test", "stop_test",
    "evaluate_rules", "get_rule_analytics", "monitor_compliance",
    "__version__",
]
