from dealgate.enforcement.api import router
from dealgate.enforcement.gateway import EnforcementGateway, enforcement_gateway
from dealgate.enforcement.ledger import DecisionLedger, decision_ledger
from dealgate.enforcement.models import (
    ActorProfile,
    Deal,
    EnforcementDecision,
    EvidenceItem,
    HealthScoreRecord,
    OverrideToken,
)
from dealgate.enforcement.overrides import OverrideService, override_service
from dealgate.enforcement.policy import PolicyEngine, policy_engine
from dealgate.enforcement.signals import SignalProvider, signal_provider

__all__ = [
    "router",
    "Deal",
    "EvidenceItem",
    "HealthScoreRecord",
    "ActorProfile",
    "OverrideToken",
    "EnforcementDecision",
    "EnforcementGateway",
    "enforcement_gateway",
    "DecisionLedger",
    "decision_ledger",
    "OverrideService",
    "override_service",
    "PolicyEngine",
    "policy_engine",
    "SignalProvider",
    "signal_provider",
]
