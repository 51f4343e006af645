"""
Tests for the externally triggered jobs: the /jobs endpoints and the
equivalent flask CLI commands.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from click.testing import CliRunner

from classbank import market
from classbank.commands import OriginateLoanCmd, SeatLayoutCmd
from classbank.extensions import db
from classbank.loans import originate_loan
from classbank.models import Admin, EconomicEntity, Loan, Seat

AUTH = {'Authorization': 'Bearer test-cron-secret'}


def test_jobs_reject_missing_secret(client):
    resp = client.post('/jobs/pay-quiz-rewards')
    assert resp.status_code == 401


def test_jobs_reject_wrong_secret(client):
    resp = client.post('/jobs/loan-defaults', headers={'Authorization': 'Bearer nope'})
    assert resp.status_code == 401


def test_jobs_disabled_without_configured_secret(app, client):
    app.config['CRON_SECRET'] = None
    resp = client.post('/jobs/seat-prices', headers=AUTH)
    assert resp.status_code == 401


def test_pay_quiz_rewards_job(client, teacher):
    resp = client.post('/jobs/pay-quiz-rewards', headers=AUTH)
    assert resp.status_code == 200
    assert resp.json['paid_count'] == 0


def test_loan_defaults_job(client, teacher, make_student):
    alice = make_student("Alice", 0)
    loan = originate_loan(teacher.id, alice.id, OriginateLoanCmd(Decimal('1000'), 4))
    loan.next_payment_due = datetime.now(timezone.utc) - timedelta(days=30)
    db.session.commit()

    resp = client.post('/jobs/loan-defaults', headers=AUTH)

    assert resp.status_code == 200
    assert resp.json['defaulted_loan_ids'] == [loan.id]


def test_seat_prices_job_refreshes_every_teacher(client, teacher, make_student):
    market.apply_seat_layout(teacher.id, SeatLayoutCmd(((1, 1),)))
    make_student("Alice", 1000000)

    resp = client.post('/jobs/seat-prices', headers=AUTH)

    assert resp.status_code == 200
    assert resp.json['prices'][str(teacher.id)] == 600000
    db.session.expire_all()
    assert Seat.query.filter_by(teacher_id=teacher.id).one().current_price == 600000


# -------------------- CLI --------------------

def test_create_teacher_command(client):
    from classbank.cli_commands import create_teacher_command

    runner = CliRunner()
    result = runner.invoke(create_teacher_command, ['ms_kim', '--with-entities'])

    assert result.exit_code == 0
    assert "Created teacher 'ms_kim'" in result.output
    teacher = Admin.query.filter_by(username='ms_kim').one()
    assert EconomicEntity.query.filter_by(teacher_id=teacher.id).count() == 3

    result = runner.invoke(create_teacher_command, ['ms_kim'])
    assert result.exit_code != 0


def test_initialize_entities_command_reports_conflict(client, teacher):
    from classbank.cli_commands import initialize_entities_command

    result = CliRunner().invoke(initialize_entities_command, ['--teacher-id', str(teacher.id)])

    assert result.exit_code != 0
    assert "already initialized" in result.output


def test_check_loan_defaults_command(client, teacher, make_student):
    from classbank.cli_commands import check_loan_defaults_command

    make_student("Alice", 0)
    result = CliRunner().invoke(check_loan_defaults_command, [])

    assert result.exit_code == 0
    assert "No loans defaulted." in result.output
    assert Loan.query.count() == 0


def test_recompute_seat_prices_command(client, teacher):
    from classbank.cli_commands import recompute_seat_prices_command

    market.apply_seat_layout(teacher.id, SeatLayoutCmd(((1, 2),)))
    result = CliRunner().invoke(recompute_seat_prices_command, [])

    assert result.exit_code == 0
    assert f"Teacher {teacher.id}: 100000 (2 seats)" in result.output


def test_rotate_student_names_rewrites_with_new_key(client, make_student, monkeypatch):
    import os

    from cryptography.fernet import Fernet, MultiFernet

    from classbank.cli_commands import rotate_student_names_command
    from classbank.models import Student

    alice = make_student("Alice", 0)
    name_type = Student.__table__.c.name.type
    old_key = os.environ['ENCRYPTION_KEY']
    new_key = Fernet.generate_key()

    monkeypatch.setattr(name_type, 'fernet', MultiFernet([Fernet(new_key), Fernet(old_key)]))
    result = CliRunner().invoke(rotate_student_names_command, [])
    assert result.exit_code == 0
    assert "Re-encrypted 1 student names" in result.output

    monkeypatch.setattr(name_type, 'fernet', MultiFernet([Fernet(new_key)]))
    db.session.expire_all()
    assert db.session.get(Student, alice.id).name == "Alice"
