"""
Flask CLI commands for classbank.

The periodic commands are the same operations the ``/jobs`` endpoints run,
for deployments that prefer a cron entry calling ``flask <command>``.
"""

import logging

import click
from sqlalchemy.orm.attributes import flag_modified

from classbank import loans, market, rewards, roster
from classbank.errors import EconomyError
from classbank.extensions import db
from classbank.ledger import unit_of_work
from classbank.models import Admin, Student

logger = logging.getLogger('classbank.jobs')


@click.command('create-teacher')
@click.argument('username')
@click.option('--display-name', default=None, help='Name shown to students')
@click.option('--timezone', 'tz_name', default=None, help='IANA timezone used for daily quizzes')
@click.option('--with-entities', is_flag=True, help='Also create the government, bank and securities entities')
def create_teacher_command(username, display_name, tz_name, with_entities):
    """Create a teacher (tenant) account."""
    if Admin.query.filter_by(username=username).first():
        raise click.ClickException(f"Teacher '{username}' already exists.")

    with unit_of_work():
        teacher = Admin(username=username, display_name=display_name, timezone=tz_name)
        db.session.add(teacher)
    click.echo(f"✓ Created teacher '{username}' (id {teacher.id})")

    if with_entities:
        created = roster.initialize_entities(teacher.id)
        click.echo(f"✓ Initialized {len(created)} economic entities")


@click.command('initialize-entities')
@click.option('--teacher-id', type=int, required=True, help='Teacher whose entities to create')
def initialize_entities_command(teacher_id):
    """Create any missing economic entities for a teacher."""
    if db.session.get(Admin, teacher_id) is None:
        raise click.ClickException(f"Teacher {teacher_id} does not exist.")
    try:
        created = roster.initialize_entities(teacher_id)
    except EconomyError as exc:
        raise click.ClickException(exc.message)
    for entity in created:
        click.echo(f"✓ {entity.entity_type}: {entity.name}")


@click.command('pay-quiz-rewards')
@click.option('--teacher-id', type=int, default=None, help='Limit the sweep to one teacher')
def pay_quiz_rewards_command(teacher_id):
    """Pay every completed quiz attempt whose reward is still pending."""
    result = rewards.sweep_unpaid_rewards(teacher_id)
    click.echo(f"Paid {result.paid_count} rewards totalling {result.total_paid}")
    if result.failures:
        click.echo(f"{len(result.failures)} rewards failed and remain pending", err=True)


@click.command('check-loan-defaults')
@click.option('--teacher-id', type=int, default=None, help='Limit the check to one teacher')
def check_loan_defaults_command(teacher_id):
    """Mark overdue loans as defaulted and apply the credit penalty."""
    defaulted = loans.check_loan_defaults(teacher_id)
    if defaulted:
        click.echo(f"Defaulted loans: {', '.join(str(loan_id) for loan_id in defaulted)}")
    else:
        click.echo("No loans defaulted.")


@click.command('rotate-student-names')
def rotate_student_names_command():
    """Re-encrypt every student name with the newest ENCRYPTION_KEY."""
    count = 0
    with unit_of_work():
        for student in Student.query.order_by(Student.id).all():
            # Reading decrypts with any key; flagging forces a write with the first one
            flag_modified(student, 'name')
            count += 1
    logger.info(f"Re-encrypted {count} student names")
    click.echo(f"✓ Re-encrypted {count} student names")


@click.command('recompute-seat-prices')
def recompute_seat_prices_command():
    """Refresh the cached seat price for every teacher."""
    for teacher_id, in Admin.query.with_entities(Admin.id).order_by(Admin.id).all():
        try:
            result = market.recompute_seat_price(teacher_id)
        except EconomyError as exc:
            logger.error(f"Seat price refresh failed for teacher {teacher_id}: {exc.message}")
            click.echo(f"✗ Teacher {teacher_id}: {exc.message}", err=True)
            continue
        click.echo(f"✓ Teacher {teacher_id}: {result.price} ({result.updated_seats} seats)")


def init_app(app):
    """Register CLI commands with Flask app."""
    app.cli.add_command(create_teacher_command)
    app.cli.add_command(initialize_entities_command)
    app.cli.add_command(pay_quiz_rewards_command)
    app.cli.add_command(check_loan_defaults_command)
    app.cli.add_command(recompute_seat_prices_command)
    app.cli.add_command(rotate_student_names_command)
