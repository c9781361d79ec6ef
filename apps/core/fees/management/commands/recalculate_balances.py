from django.core.management.base import BaseCommand, CommandError

from apps.core.fees.ledger import recalculate, verify_balances
from apps.core.students.models import Student


class Command(BaseCommand):
    help = 'Replay student ledgers and repair stored running balances.'

    def add_arguments(self, parser):
        parser.add_argument('--student', type=int, help='Only this student id.')
        parser.add_argument(
            '--check',
            action='store_true',
            help='Report mismatched balances without writing anything.',
        )

    def handle(self, *args, **options):
        students = Student.objects.order_by('id')
        if options['student']:
            students = students.filter(pk=options['student'])
            if not students.exists():
                raise CommandError(f"Student {options['student']} does not exist.")

        mismatched = 0
        for student in students.iterator():
            if options['check']:
                problems = verify_balances(student=student)
                for problem in problems:
                    self.stdout.write(
                        f"student {student.pk} entry {problem['entry_id']}: "
                        f"stored {problem['stored']}, expected {problem['expected']}"
                    )
                mismatched += len(problems)
            else:
                mismatched += recalculate(student=student)

        if options['check'] and mismatched:
            raise CommandError(f'{mismatched} ledger entries have stale balances.')
        verb = 'found' if options['check'] else 'repaired'
        self.stdout.write(self.style.SUCCESS(f'{mismatched} stale balances {verb}.'))
