import datetime
import logging
from datetime import timedelta
from typing import Callable, Optional

from .job_types import Job, LifecycleEvent, Notification, NotificationDraft
from .payloads import JobType
from .retry_policy import utcnow
from .store.base import JobStore

logger = logging.getLogger(__name__)

DASHBOARD_URL = '/dashboard'

_RESULT_URLS = {
    JobType.WEBSITE_CRAWL: '/dashboard/performance',
    JobType.PERFORMANCE_ANALYSIS: '/dashboard/performance',
    JobType.COMPETITOR_MONITORING: '/dashboard/competitors',
    JobType.CONTENT_PERFORMANCE_TRACKING: '/dashboard/performance',
    JobType.SERP_TRACKING: '/dashboard/performance',
}


def result_url(job_type: JobType) -> str:
    """Where the UI shows results for a completed job of this type"""
    return _RESULT_URLS.get(JobType(job_type), DASHBOARD_URL)


class NotificationPublisher:
    """
    Turns job lifecycle events into notification records.

    Publishing is best-effort: a failure to persist a notification is logged
    and never affects the job that triggered it.
    """

    def __init__(self,
                 store: JobStore,
                 completed_dismiss_after: float = 5 * 60.0,
                 cancelled_dismiss_after: float = 2 * 60.0,
                 clock: Callable[[], datetime.datetime] = utcnow):
        self.store = store
        self.completed_dismiss_after = completed_dismiss_after
        self.cancelled_dismiss_after = cancelled_dismiss_after
        self.clock = clock

    def build(self, job: Job, event: LifecycleEvent) -> NotificationDraft:
        """Render the notification for ``event`` without persisting it"""
        event = LifecycleEvent(event)
        name = job.type.display_name
        common = dict(owner_id=job.owner_id, job_id=job.id, type=event.notification_type)

        if event == LifecycleEvent.STARTED:
            return NotificationDraft(
                title='Job Started',
                message=f"Your {name} job has been queued and will start processing shortly.",
                action_url=DASHBOARD_URL,
                action_text='View Progress',
                **common,
            )
        if event == LifecycleEvent.COMPLETED:
            return NotificationDraft(
                title='Job Completed',
                message=f"Your {name} job has completed successfully.",
                action_url=result_url(job.type),
                action_text='View Results',
                auto_dismiss=True,
                dismiss_at=self.clock() + timedelta(seconds=self.completed_dismiss_after),
                **common,
            )
        if event == LifecycleEvent.RETRYING:
            return NotificationDraft(
                title='Job Retrying',
                message=f"Your {name} job failed and will retry automatically.",
                action_url=DASHBOARD_URL,
                action_text='View Details',
                **common,
            )
        if event == LifecycleEvent.FAILED:
            return NotificationDraft(
                title='Job Failed',
                message=f"Your {name} job failed: {job.error or 'Unknown error'}",
                action_url=DASHBOARD_URL,
                action_text='View Details',
                **common,
            )
        return NotificationDraft(
            title='Job Cancelled',
            message=f"Your {name} job was cancelled.",
            auto_dismiss=True,
            dismiss_at=self.clock() + timedelta(seconds=self.cancelled_dismiss_after),
            **common,
        )

    async def publish(self, job: Job, event: LifecycleEvent) -> Optional[Notification]:
        try:
            notification = await self.store.create_notification(self.build(job, event))
        except Exception as e:
            logger.error(f"Failed to publish {getattr(event, 'value', event)} notification for job {job.id}: {e}")
            return None
        logger.debug(f"Published {notification.type.value} notification for job {job.id}")
        return notification
