"""
Scheduler pour les tâches automatiques Sales CRM
- Rappels des followups arrivant à échéance (toutes les minutes)
- Résumé quotidien par commercial (followups du jour + en retard)
"""

import logging
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import SCHEDULER_TIMEZONE, REMINDER_WINDOW_MINUTES, DAILY_DIGEST_HOUR
from services.followup_scheduler import FollowUpScheduler
from services.notifications import NotificationSink

logger = logging.getLogger("scheduler")


class TaskScheduler:
    """Gestionnaire de tâches planifiées"""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)
        self.followups: Optional[FollowUpScheduler] = None
        self.notifier: Optional[NotificationSink] = None

    def configure(self, followups: FollowUpScheduler, notifier: NotificationSink):
        self.followups = followups
        self.notifier = notifier

    def start(self):
        """Démarre le scheduler avec toutes les tâches"""
        if self.followups is None:
            raise RuntimeError("TaskScheduler.configure() doit être appelé avant start()")

        self.scheduler.add_job(
            self.send_due_reminders,
            IntervalTrigger(minutes=1),
            id="due_reminders",
            name="Rappels followups",
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.add_job(
            self.send_daily_digest,
            CronTrigger(hour=DAILY_DIGEST_HOUR, minute=0),
            id="daily_digest",
            name="Résumé quotidien",
            replace_existing=True
        )

        self.scheduler.start()
        logger.info("Scheduler démarré avec succès")

    def stop(self):
        """Arrête le scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler arrêté")

    # ==================== TÂCHES PLANIFIÉES ====================

    async def send_due_reminders(self) -> int:
        """Notifie chaque followup dû dans la fenêtre, une seule fois"""
        try:
            due = await self.followups.claim_due_reminders(timedelta(minutes=REMINDER_WINDOW_MINUTES))
            for followup in due:
                lead = await self.followups.db.leads.find_one(
                    {"id": followup.lead_id}, {"_id": 0, "name": 1}
                )
                await self.notifier.notify(
                    followup.assigned_to,
                    "Follow-Up Due",
                    f"Follow-up ({followup.followup_type}) with {(lead or {}).get('name', 'lead')} "
                    f"is due at {followup.scheduled}",
                    "followup",
                    followup.id,
                    "FollowUp"
                )
            if due:
                logger.info(f"Rappels envoyés: {len(due)}")
            return len(due)

        except Exception as e:
            logger.error(f"Erreur rappels followups: {str(e)}")
            return 0

    async def send_daily_digest(self) -> int:
        """Résumé par commercial: followups du jour et en retard"""
        try:
            counts = await self.followups.digest_counts()
            for user_id, entry in counts.items():
                await self.notifier.notify(
                    user_id,
                    "Daily Follow-Up Digest",
                    f"You have {entry['today']} follow-up(s) today and {entry['overdue']} overdue.",
                    "system"
                )
            logger.info(f"Résumé quotidien envoyé à {len(counts)} utilisateur(s)")
            return len(counts)

        except Exception as e:
            logger.error(f"Erreur résumé quotidien: {str(e)}")
            return 0


# Instance globale
task_scheduler = TaskScheduler()
