"""
Tests for daily quiz grading, reward payment and the recovery sweep.
"""

from decimal import Decimal

import pytest

from classbank import rewards
from classbank.commands import PublishQuizCmd, QuizAnswer, QuizSettingsCmd, SubmitQuizCmd
from classbank.errors import Conflict, DependencyFailure, NotFound
from classbank.extensions import db
from classbank.models import QuizAttempt, Transaction
from conftest import checking

QUESTIONS = (
    {'question': 'Who issues money?', 'options': ['Bank', 'Government'], 'correct_answer': 'Government'},
    {'question': 'What is tax?', 'options': ['A levy', 'A gift'], 'correct_answer': 'A levy'},
    {'question': 'What is interest?', 'options': ['A fee for money', 'A seat'], 'correct_answer': 'A fee for money'},
)


@pytest.fixture
def quiz(teacher):
    return rewards.publish_quiz(teacher.id, PublishQuizCmd(None, QUESTIONS))


def _answers(*pairs):
    return SubmitQuizCmd(tuple(QuizAnswer(index, answer) for index, answer in pairs))


# -------------------- PURE FUNCTIONS --------------------

def test_calculate_reward_perfect_score_gets_bonus():
    breakdown = rewards.calculate_reward(3, 3, rewards.RewardSchedule())
    assert breakdown.perfect is True
    assert breakdown.total == 1000 + 3 * 1500 + 1500


def test_calculate_reward_partial_score():
    breakdown = rewards.calculate_reward(1, 3, rewards.RewardSchedule())
    assert breakdown.perfect is False
    assert breakdown.total == 1000 + 1500


def test_calculate_reward_empty_quiz_is_not_perfect():
    assert rewards.calculate_reward(0, 0, rewards.RewardSchedule()).total == 1000


def test_grade_answers_trims_and_ignores_duplicates():
    answers = (
        QuizAnswer(0, '  Government '),
        QuizAnswer(0, 'Bank'),
        QuizAnswer(1, 'a levy'),
        QuizAnswer(7, 'anything'),
    )
    correct, graded = rewards.grade_answers(list(QUESTIONS), answers)

    assert correct == 1
    assert [item['question_index'] for item in graded] == [0, 1]
    assert [item['is_correct'] for item in graded] == [True, False]


# -------------------- SUBMISSION --------------------

def test_submit_grades_and_pays_immediately(teacher, make_student, quiz):
    alice = make_student("Alice", 0)

    result = rewards.submit_quiz(teacher.id, alice.id, _answers((0, 'Government'), (1, 'A levy'), (2, 'A seat')))

    assert result.paid is True
    assert result.attempt.correct_count == 2
    assert result.attempt.total_reward == 1000 + 2 * 1500
    assert checking(alice) == Decimal('4000')
    db.session.expire_all()
    assert db.session.get(QuizAttempt, result.attempt.id).reward_paid is True
    assert Transaction.query.filter_by(transaction_type='quiz_reward', to_student_id=alice.id).count() == 1


def test_submit_twice_is_conflict(teacher, make_student, quiz):
    alice = make_student("Alice", 0)
    rewards.submit_quiz(teacher.id, alice.id, _answers((0, 'Government')))

    with pytest.raises(Conflict):
        rewards.submit_quiz(teacher.id, alice.id, _answers((0, 'Government'), (1, 'A levy')))

    assert QuizAttempt.query.filter_by(student_id=alice.id).count() == 1
    assert checking(alice) == Decimal('2500')


def test_unique_index_rejects_duplicate_when_precheck_misses(teacher, make_student, quiz, monkeypatch):
    alice = make_student("Alice", 0)
    rewards.submit_quiz(teacher.id, alice.id, _answers((0, 'Government'), (1, 'A levy'), (2, 'A seat')))

    # Simulate a concurrent submit that passed the read check
    monkeypatch.setattr(rewards, 'completed_attempt', lambda student_id, quiz_id: None)
    with pytest.raises(Conflict):
        rewards.submit_quiz(teacher.id, alice.id, _answers((0, 'Government'), (1, 'A levy'), (2, 'A levy')))

    assert QuizAttempt.query.filter_by(student_id=alice.id).count() == 1
    assert checking(alice) == Decimal('4000')
    assert Transaction.query.filter_by(transaction_type='quiz_reward', to_student_id=alice.id).count() == 1


def test_submit_without_quiz_is_not_found(teacher, make_student):
    alice = make_student("Alice", 0)

    with pytest.raises(NotFound):
        rewards.submit_quiz(teacher.id, alice.id, _answers((0, 'Government')))


def test_custom_reward_schedule_applies(teacher, make_student, quiz):
    rewards.update_quiz_settings(teacher.id, QuizSettingsCmd(500, 100, 0))
    alice = make_student("Alice", 0)

    result = rewards.submit_quiz(
        teacher.id, alice.id, _answers((0, 'Government'), (1, 'A levy'), (2, 'A fee for money'))
    )

    assert result.attempt.total_reward == 500 + 3 * 100
    assert checking(alice) == Decimal('800')


def test_republish_blocked_after_attempts(teacher, make_student, quiz):
    alice = make_student("Alice", 0)
    rewards.submit_quiz(teacher.id, alice.id, _answers((0, 'Government')))

    with pytest.raises(Conflict):
        rewards.publish_quiz(teacher.id, PublishQuizCmd(quiz.quiz_date, QUESTIONS[:1]))


# -------------------- RECOVERY SWEEP --------------------

def test_failed_payment_is_swept_exactly_once(teacher, make_student, quiz, monkeypatch):
    alice = make_student("Alice", 0)

    def failing_move_funds(*args, **kwargs):
        raise DependencyFailure('bank checking account')

    monkeypatch.setattr(rewards, 'move_funds', failing_move_funds)
    result = rewards.submit_quiz(teacher.id, alice.id, _answers((0, 'Government')))
    monkeypatch.undo()

    assert result.paid is False
    assert checking(alice) == Decimal('0')
    db.session.expire_all()
    assert db.session.get(QuizAttempt, result.attempt.id).reward_paid is False

    first = rewards.sweep_unpaid_rewards()
    second = rewards.sweep_unpaid_rewards()

    assert first.paid_count == 1
    assert first.total_paid == Decimal('2500')
    assert second.paid_count == 0
    assert second.total_paid == Decimal('0')
    assert checking(alice) == Decimal('2500')


def test_pay_attempt_reward_is_idempotent(teacher, make_student, quiz):
    alice = make_student("Alice", 0)
    result = rewards.submit_quiz(teacher.id, alice.id, _answers((0, 'Government')))

    assert rewards.pay_attempt_reward(result.attempt.id) is None
    assert checking(alice) == Decimal('2500')
