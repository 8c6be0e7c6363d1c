"""
领域异常：每类错误带有 HTTP 状态码，由 main.py 的异常处理器统一转换为响应
"""
from typing import Optional


class CommunityPassError(Exception):
    """业务异常基类"""
    status_code = 400
    code = "error"

    def __init__(self, message: str, *, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason

    def __str__(self) -> str:
        if self.reason:
            return f"{self.message}: {self.reason}"
        return self.message


# ---------- 404 ---------- #
class NotFoundError(CommunityPassError):
    status_code = 404
    code = "not_found"


class UserNotFound(NotFoundError):
    code = "user_not_found"


class ArtistNotFound(NotFoundError):
    code = "artist_not_found"


class CommunityNotFound(NotFoundError):
    code = "community_not_found"


class NoActiveCollection(NotFoundError):
    code = "no_active_collection"


class CollectionNotFound(NotFoundError):
    code = "collection_not_found"


class MembershipNotFound(NotFoundError):
    code = "membership_not_found"


class WalletNotFound(NotFoundError):
    code = "wallet_not_found"


# ---------- 409 ---------- #
class ConflictError(CommunityPassError):
    status_code = 409
    code = "conflict"


class AlreadyMember(ConflictError):
    code = "already_member"


class DuplicateActiveCollection(ConflictError):
    code = "duplicate_active_collection"


class CollectionSoldOut(ConflictError):
    code = "collection_sold_out"


class MembershipConflict(ConflictError):
    code = "membership_conflict"


# ---------- 502：链上调用失败或超时（fail-closed，不落库） ---------- #
class LedgerFailure(CommunityPassError):
    status_code = 502
    code = "ledger_failure"


class LedgerMintFailed(LedgerFailure):
    code = "ledger_mint_failed"


class LedgerRenewalFailed(LedgerFailure):
    code = "ledger_renewal_failed"


class LedgerCollectionFailed(LedgerFailure):
    code = "ledger_collection_failed"


# ---------- 内部 ---------- #
class JobExecutionError(CommunityPassError):
    """定时任务执行失败：只记录到 cron_job_runs，不向调度器外抛"""
    status_code = 500
    code = "job_execution_error"

    def __init__(self, job_name: str, reason: str):
        super().__init__(f"任务 {job_name} 执行失败", reason=reason)
        self.job_name = job_name


class AppendOnlyViolation(CommunityPassError):
    """只追加表（交易流水、任务执行记录）被修改或删除"""
    status_code = 500
    code = "append_only_violation"
