"""
Report products whose stock_quantity disagrees with their movement ledger.

Usage:
    python manage.py check_stock_ledger
    python manage.py check_stock_ledger --fail   # exit non-zero on mismatch
"""
from django.core.management.base import BaseCommand, CommandError

from inventory.services import find_ledger_mismatches


class Command(BaseCommand):
    help = 'Compare product stock quantities with the sum of their stock movements'

    def add_arguments(self, parser):
        parser.add_argument(
            '--fail',
            action='store_true',
            help='Exit with an error when any mismatch is found',
        )

    def handle(self, *args, **options):
        mismatches = find_ledger_mismatches()

        if not mismatches:
            self.stdout.write(self.style.SUCCESS('Stock ledger is consistent.'))
            return

        for row in mismatches:
            self.stdout.write(self.style.WARNING(
                f"{row['sku']} (#{row['product_id']}): stock {row['stock_quantity']}, "
                f"ledger {row['ledger_total']} over {row['movement_count']} movements"
            ))

        summary = f'{len(mismatches)} product(s) out of sync with the stock ledger'
        if options['fail']:
            raise CommandError(summary)
        self.stdout.write(self.style.WARNING(summary))
