
# 聚合导入所有模型，供 Alembic 发现

from .installation import Installation, OAuthState
from .connection import Connection
from .sync_job import SyncJob, SyncJobItem
from .sync_log import SyncLogEntry
from .template import ConnectionTemplate
from .invite import ConnectionInvite
from .schedule import Schedule

__all__ = [
    # installation
    "Installation", "OAuthState",
    # sync
    "Connection", "SyncJob", "SyncJobItem", "SyncLogEntry",
    # onboarding / others
    "ConnectionTemplate", "ConnectionInvite", "Schedule",
]
