from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from Qsync.cursorPoller import STREAM_MILESTONES, CursorPoller
from Qsync.dispatchWorker import DispatchWorker, retry_failed_job
from Qsync.maintenanceUtils import delete_stuck_queue_jobs
from Qsync.pollingState import get_watermark_state
from Qsync.quotaAggregator import manual_refresh
from Qsync.queueManager import QueueManager
from Qsync.scheduleValidator import revalidate_blocked_visits, revalidate_visit
from Qsync.taskValidator import pending_issues_by_visit
from Qsync.timeUtils import to_date


class Command(BaseCommand):
    help = 'HIS queue bridge management command'

    def add_arguments(self, parser):
        parser.add_argument(
            '--action',
            choices=['poll', 'build', 'dispatch', 'retry', 'revalidate', 'purge',
                     'refresh-schedule', 'stats', 'watermarks', 'progress', 'issues'],
            required=True,
            help='Action to perform'
        )
        parser.add_argument(
            '--stream',
            choices=list(STREAM_MILESTONES) + ['all'],
            default='all',
            help='Stream to poll'
        )
        parser.add_argument('--visit', help='Visit id (no_rawat) for revalidate, purge and progress')
        parser.add_argument('--job', type=int, help='Queue job id for retry')
        parser.add_argument('--clinics', nargs='+', help='Authority clinic codes for refresh-schedule')
        parser.add_argument('--dates', nargs='+', help='Dates (YYYY-MM-DD) for refresh-schedule')
        parser.add_argument(
            '--limit',
            type=int,
            default=1,
            help='Number of jobs to dispatch'
        )

    def handle(self, *args, **options):
        action = options['action']

        if action == 'poll':
            streams = list(STREAM_MILESTONES) if options['stream'] == 'all' else [options['stream']]
            for stream in streams:
                result = CursorPoller(stream).poll()
                if 'error' in result:
                    self.stdout.write(self.style.ERROR(f"{stream}: rolled back - {result['error']}"))
                else:
                    self.stdout.write(self.style.SUCCESS(
                        f"{stream}: {result['rows']} rows in {result['batches']} batches "
                        f"({result['created']} created, {result['updated']} updated, {result['skipped']} skipped)"
                    ))

        elif action == 'build':
            results = QueueManager.build_queue()
            self.stdout.write(self.style.SUCCESS(
                f"Queued {results['registration']['queued']} registrations, "
                f"{results['milestones']['queued']} milestone updates "
                f"({results['milestones']['waiting']} waiting on prerequisites)"
            ))

        elif action == 'dispatch':
            worker = DispatchWorker()
            for _ in range(options['limit']):
                result = worker.process_next()
                if not result['processed']:
                    self.stdout.write('Queue is empty')
                    break
                style = self.style.SUCCESS if result['status'] == 'SENT' else self.style.WARNING
                self.stdout.write(style(f"Job {result['job_id']}: {result['status']} {result.get('error', '')}"))

        elif action == 'retry':
            if not options['job']:
                raise CommandError('--job is required for retry')
            self._report(retry_failed_job(options['job']), f"Job {options['job']} requeued")

        elif action == 'revalidate':
            if options['visit']:
                result = revalidate_visit(options['visit'])
                self._report(result, f"{options['visit']}: {result.get('status')}")
            else:
                results = revalidate_blocked_visits()
                changed = sum(1 for r in results if r.get('changed'))
                self.stdout.write(self.style.SUCCESS(f"Revalidated {len(results)} blocked visits, {changed} now READY"))

        elif action == 'purge':
            if not options['visit']:
                raise CommandError('--visit is required for purge')
            result = delete_stuck_queue_jobs(options['visit'])
            self._report(result, f"Deleted {result.get('deleted')} jobs, reset milestones {result.get('reset')}")

        elif action == 'refresh-schedule':
            if not options['clinics']:
                raise CommandError('--clinics is required for refresh-schedule')
            dates = [to_date(d) for d in options['dates']] if options['dates'] else [timezone.now().date()]
            for result in manual_refresh(options['clinics'], dates):
                if 'error' in result:
                    self.stdout.write(self.style.ERROR(f"{result['clinic_id']} {result['date']}: {result['error']}"))
                elif 'skipped' in result:
                    self.stdout.write(self.style.WARNING(f"{result['clinic_id']} {result['date']}: {result['skipped']}"))
                else:
                    self.stdout.write(self.style.SUCCESS(f"{result['clinic_id']} {result['date']}: {result['rows']} rows"))

        elif action == 'stats':
            stats = QueueManager.get_queue_statistics()
            self.stdout.write('\n=== QUEUE STATISTICS ===')
            self.stdout.write(f"Total: {stats['total']}")
            self.stdout.write(f"Pending: {stats['pending']}")
            self.stdout.write(f"Sent: {stats['sent']}")
            self.stdout.write(f"Failed: {stats['failed']}")
            self.stdout.write(f"Average retries: {stats['average_retry_count']}")

            self.stdout.write('\n=== BY MILESTONE ===')
            for milestone, counts in stats['by_milestone'].items():
                self.stdout.write(f"{milestone}: {counts}")

            self.stdout.write('\n=== VISITS ===')
            for status, count in stats['visits'].items():
                self.stdout.write(f"{status}: {count}")

        elif action == 'watermarks':
            for state in get_watermark_state():
                line = (f"{state['stream']}: committed {state['committed_cursor']} "
                        f"pending {state['pending_cursor']} batches {state['batch_count']}")
                if state['last_error']:
                    self.stdout.write(self.style.ERROR(f"{line} last error: {state['last_error']}"))
                else:
                    self.stdout.write(line)

        elif action == 'progress':
            if not options['visit']:
                raise CommandError('--visit is required for progress')
            progress = QueueManager.get_visit_progress(options['visit'])
            if progress is None:
                raise CommandError(f"Visit {options['visit']} not found")
            self.stdout.write(f"{progress['visit_id']}: {progress['status']} {progress['blocked_reason'] or ''}")
            for milestone, entry in progress['task_progress'].items():
                self.stdout.write(f"  milestone {milestone}: {entry}")
            for job in progress['jobs']:
                self.stdout.write(f"  job {job['id']} milestone {job['milestone']}: {job['status']} "
                                  f"(retries {job['retry_count']})")

        elif action == 'issues':
            groups = pending_issues_by_visit()
            self.stdout.write(f"{len(groups)} visits with pending issues")
            for group in groups:
                reasons = ', '.join(issue['reason'] for issue in group['issues'])
                self.stdout.write(f"{group['visit_id']}: {group['issue_count']} ({reasons})")

    def _report(self, result, success_message):
        if 'error' in result:
            self.stdout.write(self.style.ERROR(result['error']))
        else:
            self.stdout.write(self.style.SUCCESS(success_message))
