from __future__ import annotations

from datetime import timedelta
from enum import Enum


class AuditCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    DATA_ACCESS = "data_access"
    DATA_MODIFICATION = "data_modification"
    SYSTEM_ACCESS = "system_access"
    CONFIGURATION_CHANGE = "configuration_change"
    SECURITY_INCIDENT = "security_incident"
    PRIVACY = "privacy"
    COMPLIANCE = "compliance"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReportType(str, Enum):
    SOC2 = "soc2"
    GDPR = "gdpr"
    SECURITY_REVIEW = "security_review"
    CUSTOM = "custom"


SYSTEM_RETENTION_DAYS = 30
SECURITY_RETENTION_DAYS = 90
USER_ACTION_RETENTION_DAYS = 365
COMPLIANCE_RETENTION_DAYS = 2555

RETENTION_DAYS: dict[AuditCategory, int] = {
    AuditCategory.SYSTEM_ACCESS: SYSTEM_RETENTION_DAYS,
    AuditCategory.AUTHENTICATION: SECURITY_RETENTION_DAYS,
    AuditCategory.AUTHORIZATION: SECURITY_RETENTION_DAYS,
    AuditCategory.CONFIGURATION_CHANGE: SECURITY_RETENTION_DAYS,
    AuditCategory.DATA_ACCESS: USER_ACTION_RETENTION_DAYS,
    AuditCategory.DATA_MODIFICATION: USER_ACTION_RETENTION_DAYS,
    AuditCategory.SECURITY_INCIDENT: COMPLIANCE_RETENTION_DAYS,
    AuditCategory.PRIVACY: COMPLIANCE_RETENTION_DAYS,
    AuditCategory.COMPLIANCE: COMPLIANCE_RETENTION_DAYS,
}

_SOC2_CATEGORIES = {
    AuditCategory.AUTHENTICATION,
    AuditCategory.AUTHORIZATION,
    AuditCategory.DATA_ACCESS,
    AuditCategory.CONFIGURATION_CHANGE,
}
_GDPR_EVENT_MARKERS = ("data_", "consent", "privacy")

# Categories included in each compliance report type; custom covers everything.
REPORT_CATEGORIES: dict[ReportType, set[AuditCategory] | None] = {
    ReportType.SOC2: _SOC2_CATEGORIES | {AuditCategory.SECURITY_INCIDENT},
    ReportType.GDPR: {
        AuditCategory.PRIVACY,
        AuditCategory.DATA_ACCESS,
        AuditCategory.DATA_MODIFICATION,
        AuditCategory.COMPLIANCE,
    },
    ReportType.SECURITY_REVIEW: {
        AuditCategory.AUTHENTICATION,
        AuditCategory.AUTHORIZATION,
        AuditCategory.SECURITY_INCIDENT,
        AuditCategory.CONFIGURATION_CHANGE,
    },
    ReportType.CUSTOM: None,
}


def retention_window(category: AuditCategory | str) -> timedelta:
    return timedelta(days=RETENTION_DAYS[AuditCategory(category)])


def compliance_tags(
    *,
    event_type: str,
    category: AuditCategory,
    risk_level: RiskLevel,
) -> list[str]:
    # Tag at write time so reports never re-derive tags from old rules.
    tags: list[str] = []
    lowered = event_type.lower()
    if category is AuditCategory.PRIVACY or any(marker in lowered for marker in _GDPR_EVENT_MARKERS):
        tags.append("gdpr_relevant")
    if category in _SOC2_CATEGORIES:
        tags.append("soc2_relevant")
    if risk_level in {RiskLevel.HIGH, RiskLevel.CRITICAL}:
        tags.append("high_risk")
    if category is AuditCategory.SECURITY_INCIDENT:
        tags.extend(["security_incident", "requires_review"])
    return tags
