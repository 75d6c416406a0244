"""
Scheduled Jobs Module for TrustWork
Periodic housekeeping: abandoned skill tests, overdue disputes and daily freelancer payouts
"""

import os
import uuid
from datetime import datetime, timedelta
from sqlalchemy import and_
import logging

import disputes as dispute_rules
import escrow_service
import skill_tests

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def expire_stale_attempts(app, db, SkillTestAttempt, now=None):
    """
    Close skill test attempts whose timer ran out without a submission

    Returns:
        int: number of attempts expired
    """
    with app.app_context():
        now = now or datetime.utcnow()
        # Widest possible window; the per-attempt deadline is checked below
        cutoff = now - timedelta(minutes=skill_tests.TEST_TIME_LIMIT_MINUTES)
        candidates = db.session.query(SkillTestAttempt).filter(
            and_(
                SkillTestAttempt.status == 'in_progress',
                SkillTestAttempt.started_at <= cutoff
            )
        ).all()

        expired = 0
        grace = timedelta(seconds=skill_tests.SUBMISSION_GRACE_SECONDS)
        for attempt in candidates:
            if now > skill_tests.attempt_deadline(attempt) + grace:
                skill_tests.expire_attempt(attempt, now)
                expired += 1

        db.session.commit()
        logger.info(f"Expired {expired} abandoned skill test attempt(s)")
        return expired


def escalate_overdue_disputes(app, db, Dispute, Notification, now=None):
    """
    Escalate open disputes whose respondent missed the response deadline

    Returns:
        int: number of disputes escalated
    """
    with app.app_context():
        now = now or datetime.utcnow()
        overdue = db.session.query(Dispute).filter(
            and_(
                Dispute.status == 'open',
                Dispute.response_deadline < now
            )
        ).all()

        for dispute in overdue:
            dispute_rules.apply_status(dispute, 'escalated', now)
            for user_id in (dispute.initiated_by, dispute.respondent_id):
                db.session.add(Notification(
                    user_id=user_id,
                    notification_type='dispute_escalated',
                    title='Dispute Escalated',
                    message=f'Dispute {dispute.dispute_number} was escalated to our team after the response deadline passed.',
                    link=f'/disputes/{dispute.id}',
                    related_id=dispute.id
                ))
            logger.info(f"Escalated overdue dispute {dispute.dispute_number}")

        db.session.commit()
        return len(overdue)


def process_daily_payouts(app, db, Escrow, BankAccount, PayoutBatch, payfast_client, audit=None):
    """
    Pay out every released escrow whose payout is still pending

    Each payout goes to the freelancer's verified bank account through PayFast.
    A PayoutBatch records the run: completed when all succeed, failed when
    none do, partial otherwise.

    Returns:
        PayoutBatch or None when there is nothing to pay
    """
    with app.app_context():
        pending = db.session.query(Escrow).filter(
            and_(
                Escrow.status == 'released',
                Escrow.payout_status == 'pending'
            )
        ).order_by(Escrow.released_at.asc()).all()

        if not pending:
            logger.info("No pending payouts to process")
            return None

        batch = PayoutBatch(
            batch_reference=f"BATCH-{datetime.utcnow().strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}",
            total_amount=round(sum(e.net_amount or 0 for e in pending), 2),
            total_fees=round(sum(e.platform_fee or 0 for e in pending), 2),
            payout_count=len(pending),
            status='processing',
            started_at=datetime.utcnow()
        )
        db.session.add(batch)
        db.session.flush()
        logger.info(f"Processing {len(pending)} payout(s) in batch {batch.batch_reference}")

        successful = 0
        failed = 0
        for escrow in pending:
            escrow.payout_batch_id = batch.id
            escrow_service.initiate_payout(escrow)

            bank_account = db.session.query(BankAccount).filter_by(
                user_id=escrow.recipient_id,
                is_verified=True
            ).first()
            if not bank_account:
                escrow_service.fail_payout(escrow, 'No verified bank account')
                failed += 1
                continue

            result = payfast_client.create_payout(
                escrow.net_amount,
                bank_account,
                f"TW-{escrow.gig_id}-{escrow.id}"
            )
            if result.get('success'):
                escrow_service.complete_payout(escrow, result.get('reference'))
                successful += 1
                if audit:
                    audit.log_financial(
                        'payout_completed',
                        f"Paid out escrow {escrow.id} to freelancer {escrow.recipient_id}",
                        escrow.net_amount, 'escrow', escrow.id,
                        user_id=escrow.recipient_id
                    )
            else:
                escrow_service.fail_payout(escrow, result.get('error', 'Unknown PayFast error'))
                failed += 1

        batch.successful_payouts = successful
        batch.failed_payouts = failed
        if failed == 0:
            batch.status = 'completed'
        elif successful == 0:
            batch.status = 'failed'
        else:
            batch.status = 'partial'
        batch.completed_at = datetime.utcnow()

        db.session.commit()
        logger.info(f"Payout batch {batch.batch_reference}: {successful} succeeded, {failed} failed")
        return batch


def init_scheduler(app, db, SkillTestAttempt, Dispute, Notification, Escrow, BankAccount, PayoutBatch,
                   payfast_client, audit=None):
    """
    Initialize APScheduler with all scheduled jobs

    Returns:
        scheduler: Configured APScheduler instance
    """
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.cron import CronTrigger
    from apscheduler.triggers.interval import IntervalTrigger
    import atexit

    scheduler = BackgroundScheduler(daemon=True)
    timezone = os.getenv('TIMEZONE', 'Africa/Johannesburg')

    scheduler.add_job(
        func=lambda: expire_stale_attempts(app, db, SkillTestAttempt),
        trigger=IntervalTrigger(minutes=5),
        id='expire_stale_skill_tests',
        name='Expire abandoned skill test attempts',
        replace_existing=True
    )

    scheduler.add_job(
        func=lambda: escalate_overdue_disputes(app, db, Dispute, Notification),
        trigger=CronTrigger(minute=0, timezone=timezone),
        id='escalate_overdue_disputes',
        name='Escalate disputes past their response deadline',
        replace_existing=True
    )

    scheduler.add_job(
        func=lambda: process_daily_payouts(app, db, Escrow, BankAccount, PayoutBatch, payfast_client, audit),
        trigger=CronTrigger(hour=6, minute=0, timezone=timezone),
        id='daily_payouts',
        name='Process daily freelancer payouts (6 AM)',
        replace_existing=True
    )

    scheduler.start()
    logger.info(f"Scheduler started with timezone: {timezone}")

    atexit.register(lambda: scheduler.shutdown())

    return scheduler
