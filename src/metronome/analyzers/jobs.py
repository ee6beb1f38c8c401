"""SQL Agent job analyzer."""

from datetime import timedelta
from typing import List

from ..core.types import IssueSeverity, IssueType
from ..monitoring.models import Issue
from .base import AnalysisContext, Analyzer


class JobAnalyzer(Analyzer):
    """Reports failed, disabled critical and idle SQL Agent jobs."""

    name = "jobs"
    description = "SQL Agent job failures and schedules"
    requires = ("agent_jobs",)

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        thresholds = context.thresholds
        failure_since = context.now - timedelta(hours=thresholds.job_failure_window_hours)
        idle_since = context.now - timedelta(days=thresholds.job_idle_days)
        critical_categories = {category.lower() for category in thresholds.critical_job_categories}
        issues: List[Issue] = []

        for job in self.iterate(context, context.metadata.agent_jobs):
            if job.last_run_failed and job.last_run_date is not None and job.last_run_date > failure_since:
                issues.append(
                    self.issue(
                        context,
                        IssueType.SYSTEM,
                        IssueSeverity.HIGH,
                        f"SQL Agent job '{job.name}' failed on {job.last_run_date:%Y-%m-%d %H:%M:%S}",
                        "Review job history for detailed error information",
                        affected_object=job.name,
                        failure_message=job.last_failure_message,
                    )
                )

            if not job.enabled and job.category.lower() in critical_categories:
                issues.append(
                    self.issue(
                        context,
                        IssueType.SYSTEM,
                        IssueSeverity.MEDIUM,
                        f"Critical SQL Agent job '{job.name}' in category '{job.category}' is disabled",
                        "Review and enable the job if it should be running",
                        affected_object=job.name,
                    )
                )

            if job.enabled and (job.last_run_date is None or job.last_run_date < idle_since):
                issues.append(
                    self.issue(
                        context,
                        IssueType.SYSTEM,
                        IssueSeverity.LOW,
                        f"SQL Agent job '{job.name}' has not run in the last {thresholds.job_idle_days:g} days",
                        "Verify that the job schedule is configured correctly",
                        affected_object=job.name,
                    )
                )

        return issues
