# Database models
from community_pass.models.user import User, Artist
from community_pass.models.community import Community, NFTCollection
from community_pass.models.membership import NFTMembership, MembershipStatus, MembershipStatusFilter
from community_pass.models.transaction import TransactionRecord, TransactionType, TransactionStatus
from community_pass.models.analytics import SubscriptionAnalytics
from community_pass.models.cron_job_run import CronJobRun

__all__ = [
    "User",
    "Artist",
    "Community",
    "NFTCollection",
    "NFTMembership",
    "MembershipStatus",
    "MembershipStatusFilter",
    "TransactionRecord",
    "TransactionType",
    "TransactionStatus",
    "SubscriptionAnalytics",
    "CronJobRun",
]
