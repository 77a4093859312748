"""
Sync Services Package
=====================
Trust resolution, run orchestration, OAuth connections and source admin.
"""

from .authorization import (
    ADMIN_ROLES,
    AuthorizationStore,
    InMemoryAuthorizationStore,
    require_admin,
    require_feature,
    require_member,
)
from .import_pipeline import HttpImportPipeline, ImportedDocument, ImportPipeline, sanitize_file_name
from .orchestrator import (
    SourceResult,
    SourceStatus,
    SyncOrchestrator,
    TriggerRequest,
    TriggerResult,
)
from .source_admin import SourceAdminService, SourceTestResult
from .source_connection import SourceConnectionService
from .trust import CallerContext, CallerCredentials, TrustResolver, TrustTier

__all__ = [
    "ADMIN_ROLES",
    "AuthorizationStore",
    "InMemoryAuthorizationStore",
    "require_admin",
    "require_feature",
    "require_member",
    "HttpImportPipeline",
    "ImportedDocument",
    "ImportPipeline",
    "sanitize_file_name",
    "SourceResult",
    "SourceStatus",
    "SyncOrchestrator",
    "TriggerRequest",
    "TriggerResult",
    "SourceAdminService",
    "SourceTestResult",
    "SourceConnectionService",
    "CallerContext",
    "CallerCredentials",
    "TrustResolver",
    "TrustTier",
]
