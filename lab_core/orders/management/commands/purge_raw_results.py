# lab_core/orders/management/commands/purge_raw_results.py
from __future__ import annotations

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from lab_core.common.wiring import get_container
from lab_core.orders.selectors import RawTestResultSelector


class Command(BaseCommand):
    help = "Delete synced raw instrument results older than the retention window."

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=None,
            help="Retention in days (defaults to LAB_RAW_RESULT_RETENTION_DAYS).",
        )
        parser.add_argument("--dry-run", action="store_true", help="Print the count only; do not delete.")

    def handle(self, *args, **opts):
        days = opts["days"]
        if days is None:
            days = settings.LAB_RAW_RESULT_RETENTION_DAYS
        if days < 0:
            raise CommandError("--days must be >= 0")

        if opts["dry_run"]:
            count = RawTestResultSelector.purgeable(days=days).count()
            self.stdout.write(f"Would delete {count} raw results older than {days} days")
            return

        deleted = get_container().raw_results.auto_delete(days=days)
        self.stdout.write(self.style.SUCCESS(f"Deleted {deleted} raw results older than {days} days"))
