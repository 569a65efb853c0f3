"""Management command: rebuild positions and statistics for exchange accounts."""
from django.core.management.base import BaseCommand, CommandError

from trade_analysis.calculators import ReconstructionError
from trade_analysis.models import ExchangeAccount
from trade_analysis.services import ReconstructionService


class Command(BaseCommand):
    help = 'Reconstruct positions from stored executions and record an analysis run'

    def add_arguments(self, parser):
        parser.add_argument('--account-id', type=int, help='Only process this account')
        parser.add_argument('--all', action='store_true', help='Process every tracked account')

    def handle(self, *args, **options):
        if options.get('account_id'):
            accounts = ExchangeAccount.objects.filter(pk=options['account_id'])
            if not accounts.exists():
                raise CommandError(f"Account {options['account_id']} not found")
        elif options.get('all'):
            accounts = ExchangeAccount.objects.all()
        else:
            raise CommandError('Provide --account-id or --all')

        service = ReconstructionService()
        failed = 0

        for account in accounts.iterator():
            try:
                run = service.run_analysis(account)
            except ReconstructionError as e:
                failed += 1
                self.stderr.write(f'  {account}: FAILED ({e})')
                continue

            line = (
                f'  {account}: {run.status}, {run.positions_count} positions, '
                f'realized {run.realized_pnl}'
            )
            if run.warnings:
                line += f', {len(run.warnings)} executions skipped'
            self.stdout.write(line)

        if failed:
            raise CommandError(f'{failed} account(s) failed to reconstruct')
        self.stdout.write(self.style.SUCCESS('Done.'))
