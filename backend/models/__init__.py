"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Models Package                                                  ║
║                                                                              ║
║  Exports tous les modèles pour import facile                                 ║
║  from models import Lead, FollowUp, Activity, OutboundChannel, etc.          ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from .auth import (
    VALID_ROLES,
    UserLogin,
    UserCreate,
    User,
    SYSTEM_USER,
)

from .lead import (
    LeadStatus,
    LeadSource,
    VALID_LEAD_STATUSES,
    TERMINAL_LEAD_STATUSES,
    LEGACY_STATUS_MAP,
    normalize_lead_status,
    LeadCreate,
    Lead,
)

from .followup import (
    FollowUpType,
    FollowUpStatus,
    VALID_FOLLOWUP_TYPES,
    VALID_FOLLOWUP_STATUSES,
    TERMINAL_FOLLOWUP_STATUSES,
    FollowUpHistoryEntry,
    FollowUp,
)

from .activity import (
    ActivityType,
    ActivityStatus,
    VALID_ACTIVITY_TYPES,
    VALID_ACTIVITY_STATUSES,
    Activity,
)

from .channel import (
    RotationStrategy,
    VALID_ROTATION_STRATEGIES,
    DEFAULT_DAILY_LIMIT,
    OutboundChannel,
)

from .settings import (
    DEFAULT_FOLLOWUP_INTERVAL_DAYS,
    DEFAULT_FOLLOWUP_INTERVALS,
    CompanySetting,
)

from .notification import (
    NotificationCategory,
    Notification,
)

from .template import (
    TemplateCategory,
    VALID_TEMPLATE_CATEGORIES,
    TemplateCreate,
    TemplateUpdate,
    MessageTemplate,
)
