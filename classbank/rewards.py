"""
Daily quiz grading and reward payment.

A reward is paid at most once per attempt: the payer first flips
``reward_paid`` from false to true with a conditional UPDATE and only the
caller that wins that flip credits the student. The immediate payment after
grading and the recovery sweep both go through the same path.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from classbank.errors import Conflict, EconomyError, NotFound
from classbank.extensions import db
from classbank.ledger import BalanceRef, move_funds, unit_of_work
from classbank.models import Admin, DailyQuiz, QuizAttempt, QuizSettings
from classbank.roster import get_student
from classbank.utils.constants import (
    DEFAULT_CORRECT_ANSWER_REWARD,
    DEFAULT_PARTICIPATION_REWARD,
    DEFAULT_PERFECT_SCORE_BONUS,
)
from classbank.utils.helpers import money, tenant_today


# -------------------- REWARD SCHEDULE --------------------

@dataclass(frozen=True)
class RewardSchedule:
    participation_reward: int = DEFAULT_PARTICIPATION_REWARD
    correct_answer_reward: int = DEFAULT_CORRECT_ANSWER_REWARD
    perfect_score_bonus: int = DEFAULT_PERFECT_SCORE_BONUS

    def to_dict(self):
        return {
            'participation_reward': self.participation_reward,
            'correct_answer_reward': self.correct_answer_reward,
            'perfect_score_bonus': self.perfect_score_bonus,
        }


@dataclass(frozen=True)
class RewardBreakdown:
    participation: int
    score: int
    bonus: int
    total: int
    perfect: bool


def calculate_reward(correct_count, total_questions, schedule):
    perfect = total_questions > 0 and correct_count == total_questions
    participation = schedule.participation_reward
    score = correct_count * schedule.correct_answer_reward
    bonus = schedule.perfect_score_bonus if perfect else 0
    return RewardBreakdown(participation, score, bonus, participation + score + bonus, perfect)


def reward_schedule_for(teacher_id):
    settings = QuizSettings.query.filter_by(teacher_id=teacher_id).first()
    if settings is None:
        return RewardSchedule()
    return RewardSchedule(
        settings.participation_reward,
        settings.correct_answer_reward,
        settings.perfect_score_bonus,
    )


def update_quiz_settings(teacher_id, cmd):
    with unit_of_work():
        settings = QuizSettings.query.filter_by(teacher_id=teacher_id).first()
        if settings is None:
            settings = QuizSettings(teacher_id=teacher_id)
            db.session.add(settings)
        settings.participation_reward = cmd.participation_reward
        settings.correct_answer_reward = cmd.correct_answer_reward
        settings.perfect_score_bonus = cmd.perfect_score_bonus
    return reward_schedule_for(teacher_id)


# -------------------- GRADING --------------------

def grade_answers(questions, answers):
    """
    Count answers that match the stored correct answer after trimming.

    Unknown question indices are ignored and only the first answer to a
    question counts.
    """
    seen = set()
    correct_count = 0
    graded = []
    for answer in answers:
        index = answer.question_index
        if index in seen or index >= len(questions):
            continue
        seen.add(index)
        expected = str(questions[index].get('correct_answer', '')).strip()
        is_correct = answer.answer.strip() == expected
        if is_correct:
            correct_count += 1
        graded.append({'question_index': index, 'answer': answer.answer, 'is_correct': is_correct})
    return correct_count, graded


# -------------------- QUIZZES --------------------

def _teacher(teacher_id):
    teacher = db.session.get(Admin, teacher_id)
    if teacher is None:
        raise NotFound('teacher')
    return teacher


def publish_quiz(teacher_id, cmd):
    """Store a generated question set as the tenant's quiz for a date."""
    quiz_date = cmd.quiz_date or tenant_today(_teacher(teacher_id))
    with unit_of_work():
        quiz = DailyQuiz.query.filter_by(teacher_id=teacher_id, quiz_date=quiz_date).first()
        if quiz is not None:
            if quiz.attempts.count():
                raise Conflict(f"The quiz for {quiz_date.isoformat()} already has attempts.")
            quiz.questions = list(cmd.questions)
        else:
            quiz = DailyQuiz(teacher_id=teacher_id, quiz_date=quiz_date, questions=list(cmd.questions))
            db.session.add(quiz)
    current_app.logger.info(
        f"Published quiz for {quiz_date.isoformat()} with {len(cmd.questions)} questions (teacher {teacher_id})"
    )
    return quiz


def todays_quiz(teacher_id):
    quiz_date = tenant_today(_teacher(teacher_id))
    quiz = DailyQuiz.query.filter_by(teacher_id=teacher_id, quiz_date=quiz_date).first()
    if quiz is None:
        raise NotFound('quiz', "There is no quiz for today.")
    return quiz


def completed_attempt(student_id, quiz_id):
    return QuizAttempt.query.filter_by(
        student_id=student_id, daily_quiz_id=quiz_id, status='completed'
    ).first()


# -------------------- PAYMENT --------------------

def pay_attempt_reward(attempt_id):
    """
    Pay one completed attempt's reward if nobody has yet.

    Returns the amount paid, or None when the attempt was already paid.
    """
    with unit_of_work():
        claimed = (
            QuizAttempt.query
            .filter(
                QuizAttempt.id == attempt_id,
                QuizAttempt.status == 'completed',
                QuizAttempt.reward_paid.is_(False),
            )
            .update(
                {QuizAttempt.reward_paid: True, QuizAttempt.reward_paid_at: datetime.now(timezone.utc)},
                synchronize_session=False,
            )
        )
        if claimed != 1:
            return None
        attempt = db.session.get(QuizAttempt, attempt_id, populate_existing=True)
        amount = Decimal(attempt.total_reward or 0)
        if amount > 0:
            move_funds(
                attempt.teacher_id,
                None,
                BalanceRef.student(attempt.student_id, 'checking'),
                amount,
                'quiz_reward',
                f"Daily quiz reward ({attempt.correct_count}/{attempt.total_questions} correct)",
            )
    return amount


@dataclass
class SubmitResult:
    attempt: QuizAttempt
    graded: list
    paid: bool

    def to_dict(self):
        return {
            'attempt_id': self.attempt.id,
            'correct_count': self.attempt.correct_count,
            'total_questions': self.attempt.total_questions,
            'reward': {
                'participation': self.attempt.participation_reward,
                'score': self.attempt.score_reward,
                'bonus': self.attempt.bonus_reward,
                'total': self.attempt.total_reward,
            },
            'paid': self.paid,
            'results': self.graded,
        }


def submit_quiz(teacher_id, student_id, cmd):
    """
    Grade a student's answers, record the completed attempt, then pay it.

    The attempt commits before payment; if payment fails the attempt stays
    unpaid and the recovery sweep pays it later.
    """
    student = get_student(teacher_id, student_id)
    if cmd.daily_quiz_id is not None:
        quiz = DailyQuiz.query.filter_by(id=cmd.daily_quiz_id, teacher_id=teacher_id).first()
        if quiz is None:
            raise NotFound('quiz')
    else:
        quiz = todays_quiz(teacher_id)

    with unit_of_work():
        if completed_attempt(student.id, quiz.id) is not None:
            raise Conflict("You have already completed this quiz.")

        questions = quiz.questions or []
        correct_count, graded = grade_answers(questions, cmd.answers)
        breakdown = calculate_reward(correct_count, len(questions), reward_schedule_for(teacher_id))
        now = datetime.now(timezone.utc)
        attempt = QuizAttempt(
            student_id=student.id,
            daily_quiz_id=quiz.id,
            teacher_id=teacher_id,
            answers=[{'question_index': a.question_index, 'answer': a.answer} for a in cmd.answers],
            correct_count=correct_count,
            total_questions=len(questions),
            participation_reward=breakdown.participation,
            score_reward=breakdown.score,
            bonus_reward=breakdown.bonus,
            total_reward=breakdown.total,
            reward_paid=False,
            status='completed',
            started_at=now,
            completed_at=now,
        )
        db.session.add(attempt)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise Conflict("You have already completed this quiz.") from exc

    paid = False
    try:
        paid = pay_attempt_reward(attempt.id) is not None
    except (EconomyError, SQLAlchemyError):
        current_app.logger.warning(
            f"Reward for quiz attempt {attempt.id} left unpaid; the recovery sweep will retry.",
            exc_info=True,
        )
    current_app.logger.info(
        f"Student {student_id} scored {correct_count}/{len(questions)} on quiz {quiz.id}, "
        f"reward {breakdown.total} {'paid' if paid else 'pending'}"
    )
    return SubmitResult(attempt, graded, paid)


# -------------------- RECOVERY SWEEP --------------------

@dataclass
class SweepResult:
    paid_count: int = 0
    total_paid: Decimal = Decimal('0')
    failures: List[dict] = field(default_factory=list)

    def to_dict(self):
        return {
            'paid_count': self.paid_count,
            'total_paid': money(self.total_paid),
            'failed_count': len(self.failures),
            'failures': self.failures,
        }


def sweep_unpaid_rewards(teacher_id=None):
    """Pay every completed attempt still marked unpaid. Safe to run repeatedly."""
    query = QuizAttempt.query.filter(
        QuizAttempt.status == 'completed',
        QuizAttempt.reward_paid.is_(False),
    )
    if teacher_id is not None:
        query = query.filter(QuizAttempt.teacher_id == teacher_id)
    attempt_ids = [attempt.id for attempt in query.order_by(QuizAttempt.id).all()]

    result = SweepResult()
    for attempt_id in attempt_ids:
        try:
            amount = pay_attempt_reward(attempt_id)
        except (EconomyError, SQLAlchemyError) as exc:
            current_app.logger.error(f"Failed to pay reward for quiz attempt {attempt_id}: {exc}")
            result.failures.append({'attempt_id': attempt_id, 'error': str(exc)})
            continue
        if amount is not None:
            result.paid_count += 1
            result.total_paid += amount

    current_app.logger.info(
        f"Reward sweep paid {result.paid_count} attempts totalling {result.total_paid} "
        f"({len(result.failures)} failed)"
    )
    return result
