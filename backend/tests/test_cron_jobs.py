from datetime import timedelta

from sqlalchemy import func, select

from community_pass.models import CronJobRun, NFTMembership, TransactionRecord
from community_pass.services.analytics_service import AnalyticsService
from community_pass.services.cron_job_service import (
    DAILY_JOB_ORDER,
    JOB_AUTO_RENEW,
    JOB_CHECK_EXPIRED,
    JOB_DAILY_ANALYTICS,
    JOB_RENEWAL_REMINDERS,
)

from conftest import T0


async def _get(session_factory, membership_id):
    async with session_factory() as s:
        return await s.get(NFTMembership, membership_id)


async def _runs(session_factory, job_name):
    async with session_factory() as s:
        result = await s.execute(select(CronJobRun).where(CronJobRun.job_name == job_name).order_by(CronJobRun.id))
        return list(result.scalars().all())


async def test_expiry_job_flips_expired_and_rerun_is_noop(session_factory, job_service, add_membership):
    expired_id = await add_membership("late@example.com", T0 - timedelta(hours=1))
    active_id = await add_membership("fine@example.com", T0 + timedelta(days=3))

    run = await job_service.check_expired_memberships()
    assert run.status == "success"
    assert run.processed_items == 1

    expired = await _get(session_factory, expired_id)
    assert expired.is_active is False
    assert expired.version == 2
    assert (await _get(session_factory, active_id)).is_active is True

    rerun = await job_service.check_expired_memberships()
    assert rerun.processed_items == 0
    assert len(await _runs(session_factory, JOB_CHECK_EXPIRED)) == 2


async def test_expiry_boundary_is_inclusive(session_factory, job_service, add_membership):
    membership_id = await add_membership("edge@example.com", T0)

    run = await job_service.check_expired_memberships()

    assert run.processed_items == 1
    assert (await _get(session_factory, membership_id)).is_active is False


async def test_renewal_reminders_only_for_manual_renewals_in_window(session_factory, job_service, notifier, add_membership):
    due_id = await add_membership("due@example.com", T0 + timedelta(days=2), auto_renew=False)
    await add_membership("auto@example.com", T0 + timedelta(days=2), auto_renew=True)
    await add_membership("later@example.com", T0 + timedelta(days=5), auto_renew=False)

    run = await job_service.send_renewal_reminders()

    assert run.processed_items == 1
    assert [p["membership_id"] for p in notifier.sent] == [due_id]
    assert notifier.sent[0]["user_email"] == "due@example.com"
    assert notifier.sent[0]["days_remaining"] == 2
    assert (await _get(session_factory, due_id)).reminder_sent is True

    rerun = await job_service.send_renewal_reminders()
    assert rerun.processed_items == 0
    assert len(notifier.sent) == 1


async def test_failed_reminder_is_counted_and_retried_next_run(session_factory, job_service, notifier, add_membership):
    membership_id = await add_membership("flaky@example.com", T0 + timedelta(days=1), auto_renew=False)
    notifier.fail_ids.add(membership_id)

    run = await job_service.send_renewal_reminders()
    assert run.status == "success"
    assert run.failed_items == 1
    assert (await _get(session_factory, membership_id)).reminder_sent is False

    notifier.fail_ids.clear()
    rerun = await job_service.send_renewal_reminders()
    assert rerun.processed_items == 1


async def test_auto_renew_batch_continues_past_single_failure(session_factory, job_service, ledger, add_membership):
    expires_at = T0 + timedelta(hours=12)
    ids = []
    for i in range(1, 11):
        ids.append(await add_membership(f"sub{i}@example.com", expires_at, token_id=f"t{i}"))
    ledger.fail_renew_tokens.add("t4")

    run = await job_service.auto_renew_memberships()

    assert run.status == "success"
    assert run.processed_items == 9
    assert run.failed_items == 1
    assert run.extra["eligible"] == 10
    assert [f["membership_id"] for f in run.extra["failures"]] == [ids[3]]

    failed = await _get(session_factory, ids[3])
    assert failed.auto_renew is False
    assert failed.expires_at == expires_at
    for membership_id in ids[:3] + ids[4:]:
        renewed = await _get(session_factory, membership_id)
        assert renewed.expires_at == expires_at + timedelta(days=30)
        assert renewed.is_active is True

    async with session_factory() as s:
        renewals = await s.scalar(
            select(func.count()).select_from(TransactionRecord).where(TransactionRecord.type == "renewal")
        )
    assert renewals == 9


async def test_auto_renew_skips_memberships_outside_window(session_factory, job_service, ledger, add_membership):
    await add_membership("far@example.com", T0 + timedelta(days=10))
    await add_membership("manual@example.com", T0 + timedelta(hours=6), auto_renew=False)

    run = await job_service.auto_renew_memberships()

    assert run.processed_items == 0
    assert ledger.renewed == []


async def test_job_body_exception_is_recorded_as_failed_run(session_factory, job_service, monkeypatch):
    async def boom(self, day=None):
        raise RuntimeError("rollup exploded")

    monkeypatch.setattr(AnalyticsService, "materialize_daily_rollup", boom)

    run = await job_service.update_daily_analytics()

    assert run.status == "failed"
    assert "rollup exploded" in run.error_message
    runs = await _runs(session_factory, JOB_DAILY_ANALYTICS)
    assert [r.status for r in runs] == ["failed"]


async def test_run_all_daily_jobs_runs_in_fixed_order(session_factory, job_service, add_membership):
    await add_membership("late@example.com", T0 - timedelta(days=1))

    runs = await job_service.run_all_daily_jobs()

    assert [r.job_name for r in runs] == list(DAILY_JOB_ORDER)
    assert runs[0].processed_items == 1
    assert all(r.status == "success" for r in runs)


async def test_job_history_and_statistics(session_factory, job_service, clock):
    await job_service.check_expired_memberships()
    clock.advance(minutes=5)
    await job_service.check_expired_memberships()
    await job_service.send_renewal_reminders()

    history = await job_service.get_job_history()
    assert [r.job_name for r in history] == [JOB_RENEWAL_REMINDERS, JOB_CHECK_EXPIRED, JOB_CHECK_EXPIRED]

    only_expired = await job_service.get_job_history(JOB_CHECK_EXPIRED, limit=1)
    assert len(only_expired) == 1

    stats = await job_service.get_job_statistics(days=7)
    by_job = {(row["job_name"], row["status"]): row for row in stats}
    assert by_job[(JOB_CHECK_EXPIRED, "success")]["count"] == 2
    assert by_job[(JOB_RENEWAL_REMINDERS, "success")]["count"] == 1
    assert (JOB_AUTO_RENEW, "success") not in by_job
