"""
Typed command objects for every mutating operation.

Each command is built once at the HTTP boundary with ``from_payload`` and
is immutable afterwards, so engines never look at raw request bodies.
Invalid input raises ValidationError naming the offending field.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Tuple

from classbank.errors import ValidationError
from classbank.utils.constants import ACCOUNT_TYPES, CREDIT_ADJUSTMENT_STEPS, ENTITY_TYPES

CENTS = Decimal('0.01')


# -------------------- FIELD PARSERS --------------------

def _require_mapping(payload):
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def parse_amount(value, field='amount', allow_zero=False):
    """Coerce a JSON number or numeric string to a positive Decimal with 2 places."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"'{field}' is required and must be a number.", field=field)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"'{field}' must be a number.", field=field)
    if not amount.is_finite():
        raise ValidationError(f"'{field}' must be a finite number.", field=field)
    amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"'{field}' must be greater than 0.", field=field)
    return amount


def parse_int(value, field, minimum=None, maximum=None):
    if value is None or isinstance(value, bool):
        raise ValidationError(f"'{field}' is required and must be an integer.", field=field)
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"'{field}' must be an integer.", field=field)
        value = int(value)
    try:
        number = int(value)
    except (ValueError, TypeError):
        raise ValidationError(f"'{field}' must be an integer.", field=field)
    if minimum is not None and number < minimum:
        raise ValidationError(f"'{field}' must be at least {minimum}.", field=field)
    if maximum is not None and number > maximum:
        raise ValidationError(f"'{field}' must be at most {maximum}.", field=field)
    return number


def parse_id(value, field):
    return parse_int(value, field, minimum=1)


def parse_account_type(value, field='account_type', default='checking'):
    if value is None:
        return default
    if value not in ACCOUNT_TYPES:
        raise ValidationError(
            f"'{field}' must be one of: {', '.join(ACCOUNT_TYPES)}.", field=field
        )
    return value


def parse_description(value, field='description'):
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"'{field}' must be a string.", field=field)
    value = value.strip()
    if len(value) > 255:
        raise ValidationError(f"'{field}' must be at most 255 characters.", field=field)
    return value or None


def parse_id_list(value, field):
    """None means "all"; otherwise a non-empty list of distinct ids."""
    if value is None:
        return None
    if not isinstance(value, list) or not value:
        raise ValidationError(f"'{field}' must be a non-empty list of ids.", field=field)
    ids = tuple(parse_id(item, field) for item in value)
    if len(set(ids)) != len(ids):
        raise ValidationError(f"'{field}' contains duplicate ids.", field=field)
    return ids


def parse_bool(value, field, default=False):
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"'{field}' must be true or false.", field=field)
    return value


# -------------------- TRANSFERS --------------------

@dataclass(frozen=True)
class Party:
    """One side of a transfer: a student by id or a tenant entity by type."""
    holder: str
    key: object
    account_type: str = 'checking'

    @classmethod
    def from_payload(cls, payload, prefix):
        student_key = f'{prefix}_student_id'
        entity_key = f'{prefix}_entity_type'
        account_type = parse_account_type(payload.get(f'{prefix}_account_type'), f'{prefix}_account_type')
        has_student = payload.get(student_key) is not None
        has_entity = payload.get(entity_key) is not None
        if has_student == has_entity:
            raise ValidationError(
                f"Provide exactly one of '{student_key}' or '{entity_key}'.", field=student_key
            )
        if has_student:
            return cls('student', parse_id(payload[student_key], student_key), account_type)
        entity_type = payload[entity_key]
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(
                f"'{entity_key}' must be one of: {', '.join(ENTITY_TYPES)}.", field=entity_key
            )
        return cls('entity', entity_type, account_type)


@dataclass(frozen=True)
class TransferCmd:
    source: Party
    destination: Party
    amount: Decimal
    description: Optional[str] = None

    @classmethod
    def from_payload(cls, payload, from_student_id=None):
        payload = _require_mapping(payload)
        if from_student_id is not None:
            source = Party(
                'student',
                from_student_id,
                parse_account_type(payload.get('from_account_type'), 'from_account_type'),
            )
        else:
            source = Party.from_payload(payload, 'from')
        destination = Party.from_payload(payload, 'to')
        if source == destination:
            raise ValidationError("Cannot transfer to the same account.", field='to_student_id')
        return cls(
            source=source,
            destination=destination,
            amount=parse_amount(payload.get('amount')),
            description=parse_description(payload.get('description')),
        )


@dataclass(frozen=True)
class AccountTransferCmd:
    from_account_type: str
    to_account_type: str
    amount: Decimal

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        if payload.get('from_account_type') is None or payload.get('to_account_type') is None:
            raise ValidationError("'from_account_type' and 'to_account_type' are required.", field='from_account_type')
        from_type = parse_account_type(payload.get('from_account_type'), 'from_account_type')
        to_type = parse_account_type(payload.get('to_account_type'), 'to_account_type')
        if from_type == to_type:
            raise ValidationError("Source and destination accounts must differ.", field='to_account_type')
        return cls(from_type, to_type, parse_amount(payload.get('amount')))


@dataclass(frozen=True)
class Recipient:
    student_id: int
    amount: Decimal
    account_type: str = 'checking'


@dataclass(frozen=True)
class MultiTransferCmd:
    from_student_id: int
    from_account_type: str
    recipients: Tuple[Recipient, ...]
    transfer_type: str = 'individual'
    description: Optional[str] = None

    @property
    def total_amount(self):
        return sum((recipient.amount for recipient in self.recipients), Decimal('0'))

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        from_student_id = parse_id(payload.get('from_student_id'), 'from_student_id')
        transfer_type = payload.get('transfer_type', 'individual')
        if transfer_type not in ('individual', 'equal'):
            raise ValidationError("'transfer_type' must be 'individual' or 'equal'.", field='transfer_type')

        raw_recipients = payload.get('recipients')
        if not isinstance(raw_recipients, list) or not raw_recipients:
            raise ValidationError("'recipients' must be a non-empty list.", field='recipients')

        equal_amount = parse_amount(payload.get('amount')) if transfer_type == 'equal' else None
        recipients = []
        for item in raw_recipients:
            if not isinstance(item, dict):
                raise ValidationError("Each recipient must be an object.", field='recipients')
            recipients.append(Recipient(
                student_id=parse_id(item.get('student_id'), 'recipients.student_id'),
                amount=equal_amount if equal_amount is not None else parse_amount(item.get('amount'), 'recipients.amount'),
                account_type=parse_account_type(item.get('account_type'), 'recipients.account_type'),
            ))

        ids = [recipient.student_id for recipient in recipients]
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate recipients are not allowed.", field='recipients')
        if from_student_id in ids:
            raise ValidationError("Cannot send money to yourself.", field='recipients')

        return cls(
            from_student_id=from_student_id,
            from_account_type=parse_account_type(payload.get('from_account_type'), 'from_account_type'),
            recipients=tuple(recipients),
            transfer_type=transfer_type,
            description=parse_description(payload.get('description')),
        )


@dataclass(frozen=True)
class TaxCollectionCmd:
    tax_type: str
    value: Decimal
    account_type: str = 'checking'
    student_ids: Optional[Tuple[int, ...]] = None
    description: Optional[str] = None

    def tax_for(self, balance):
        """Tax owed on ``balance``, in whole units."""
        if self.tax_type == 'percentage':
            owed = Decimal(balance) * self.value / Decimal('100')
        else:
            owed = self.value
        return owed.quantize(Decimal('1'), rounding=ROUND_HALF_UP)

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        tax_type = payload.get('tax_type', 'percentage')
        if tax_type not in ('percentage', 'fixed'):
            raise ValidationError("'tax_type' must be 'percentage' or 'fixed'.", field='tax_type')
        if tax_type == 'percentage':
            value = parse_amount(payload.get('tax_rate'), 'tax_rate')
            if value > 100:
                raise ValidationError("'tax_rate' must be between 0 and 100.", field='tax_rate')
        else:
            value = parse_amount(payload.get('tax_amount'), 'tax_amount')
        return cls(
            tax_type=tax_type,
            value=value,
            account_type=parse_account_type(payload.get('account_type')),
            student_ids=parse_id_list(payload.get('student_ids'), 'student_ids'),
            description=parse_description(payload.get('description')),
        )


@dataclass(frozen=True)
class AllowanceCmd:
    amount: Optional[Decimal] = None
    student_ids: Optional[Tuple[int, ...]] = None
    from_government: bool = False
    account_type: str = 'checking'
    description: Optional[str] = None

    @property
    def use_weekly_allowance(self):
        return self.amount is None

    def amount_for(self, student):
        if self.amount is not None:
            return self.amount
        return Decimal(student.weekly_allowance or 0)

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        use_weekly = parse_bool(payload.get('use_weekly_allowance'), 'use_weekly_allowance', default=True)
        amount = None
        if not use_weekly or payload.get('amount') is not None:
            amount = parse_amount(payload.get('amount'))
        return cls(
            amount=amount,
            student_ids=parse_id_list(payload.get('student_ids'), 'student_ids'),
            from_government=parse_bool(payload.get('from_government'), 'from_government'),
            account_type=parse_account_type(payload.get('account_type')),
            description=parse_description(payload.get('description')),
        )


# -------------------- SEATS --------------------

@dataclass(frozen=True)
class BuySeatCmd:
    seat_number: int

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        return cls(parse_int(payload.get('seat_number'), 'seat_number', minimum=1))


@dataclass(frozen=True)
class SellSeatCmd:
    seat_number: int

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        return cls(parse_int(payload.get('seat_number'), 'seat_number', minimum=1))


@dataclass(frozen=True)
class RecomputePriceCmd:
    manual_student_count: Optional[int] = None
    # Store the override on MarketSettings for later recomputes
    persist: bool = False

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        count = payload.get('manual_student_count')
        if count is not None:
            count = parse_int(count, 'manual_student_count', minimum=0)
        return cls(count, parse_bool(payload.get('persist'), 'persist'))


@dataclass(frozen=True)
class SeatLayoutCmd:
    columns: Tuple[Tuple[int, int], ...]

    @property
    def total_seats(self):
        return sum(seats for _, seats in self.columns)

    def as_config(self):
        return [{'column': column, 'seats': seats} for column, seats in self.columns]

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        raw = payload.get('columns')
        if not isinstance(raw, list) or not raw:
            raise ValidationError("'columns' must be a non-empty list.", field='columns')
        columns = []
        for item in raw:
            if not isinstance(item, dict):
                raise ValidationError("Each column must be an object.", field='columns')
            columns.append((
                parse_int(item.get('column'), 'columns.column', minimum=1),
                parse_int(item.get('seats'), 'columns.seats', minimum=0, maximum=50),
            ))
        numbers = [column for column, _ in columns]
        if len(set(numbers)) != len(numbers):
            raise ValidationError("Column numbers must be unique.", field='columns')
        columns.sort()
        if sum(seats for _, seats in columns) <= 0:
            raise ValidationError("The layout must contain at least one seat.", field='columns')
        return cls(tuple(columns))


# -------------------- LOANS --------------------

@dataclass(frozen=True)
class OriginateLoanCmd:
    amount: Decimal
    weeks: int

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        return cls(
            amount=parse_amount(payload.get('amount')),
            weeks=parse_int(payload.get('duration_weeks', payload.get('weeks')), 'duration_weeks', minimum=1),
        )


@dataclass(frozen=True)
class RepayLoanCmd:
    amount: Decimal

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        return cls(parse_amount(payload.get('amount', payload.get('payment_amount')), 'amount'))


# -------------------- QUIZZES --------------------

@dataclass(frozen=True)
class QuizAnswer:
    question_index: int
    answer: str


@dataclass(frozen=True)
class SubmitQuizCmd:
    answers: Tuple[QuizAnswer, ...]
    daily_quiz_id: Optional[int] = None

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        raw = payload.get('answers')
        if not isinstance(raw, list):
            raise ValidationError("'answers' must be a list.", field='answers')
        answers = []
        for item in raw:
            if not isinstance(item, dict):
                raise ValidationError("Each answer must be an object.", field='answers')
            answer = item.get('answer', '')
            if answer is None:
                answer = ''
            if not isinstance(answer, str):
                raise ValidationError("'answers.answer' must be a string.", field='answers.answer')
            answers.append(QuizAnswer(
                question_index=parse_int(item.get('question_index'), 'answers.question_index', minimum=0),
                answer=answer,
            ))
        quiz_id = payload.get('daily_quiz_id')
        return cls(
            answers=tuple(answers),
            daily_quiz_id=parse_id(quiz_id, 'daily_quiz_id') if quiz_id is not None else None,
        )


@dataclass(frozen=True)
class PublishQuizCmd:
    quiz_date: Optional[date]
    questions: Tuple[dict, ...]

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        quiz_date = payload.get('quiz_date')
        if quiz_date is not None:
            try:
                quiz_date = date.fromisoformat(quiz_date)
            except (TypeError, ValueError):
                raise ValidationError("'quiz_date' must be an ISO date (YYYY-MM-DD).", field='quiz_date')

        raw = payload.get('questions')
        if not isinstance(raw, list) or not raw:
            raise ValidationError("'questions' must be a non-empty list.", field='questions')
        questions = []
        for item in raw:
            if not isinstance(item, dict):
                raise ValidationError("Each question must be an object.", field='questions')
            question = item.get('question')
            correct = item.get('correct_answer')
            if not isinstance(question, str) or not question.strip():
                raise ValidationError("'questions.question' is required.", field='questions.question')
            if not isinstance(correct, str) or not correct.strip():
                raise ValidationError("'questions.correct_answer' is required.", field='questions.correct_answer')
            options = item.get('options') or []
            if not isinstance(options, list) or not all(isinstance(option, str) for option in options):
                raise ValidationError("'questions.options' must be a list of strings.", field='questions.options')
            questions.append({
                'question': question.strip(),
                'options': options,
                'correct_answer': correct.strip(),
                'explanation': item.get('explanation'),
            })
        return cls(quiz_date, tuple(questions))


@dataclass(frozen=True)
class QuizSettingsCmd:
    participation_reward: int
    correct_answer_reward: int
    perfect_score_bonus: int

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        return cls(
            participation_reward=parse_int(payload.get('participation_reward'), 'participation_reward', minimum=0),
            correct_answer_reward=parse_int(payload.get('correct_answer_reward'), 'correct_answer_reward', minimum=0),
            perfect_score_bonus=parse_int(payload.get('perfect_score_bonus'), 'perfect_score_bonus', minimum=0),
        )


# -------------------- ROSTER --------------------

@dataclass(frozen=True)
class CreateStudentCmd:
    name: str
    weekly_allowance: Decimal = Decimal('0')
    credit_score: int = 700
    initial_balance: Decimal = Decimal('0')

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        name = payload.get('name')
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("'name' is required.", field='name')
        if len(name.strip()) > 100:
            raise ValidationError("'name' must be at most 100 characters.", field='name')
        weekly_allowance = payload.get('weekly_allowance')
        initial_balance = payload.get('initial_balance')
        credit_score = payload.get('credit_score')
        return cls(
            name=name.strip(),
            weekly_allowance=(
                parse_amount(weekly_allowance, 'weekly_allowance', allow_zero=True)
                if weekly_allowance is not None else Decimal('0')
            ),
            credit_score=(
                parse_int(credit_score, 'credit_score', minimum=350, maximum=850)
                if credit_score is not None else 700
            ),
            initial_balance=(
                parse_amount(initial_balance, 'initial_balance', allow_zero=True)
                if initial_balance is not None else Decimal('0')
            ),
        )


@dataclass(frozen=True)
class CreditAdjustmentCmd:
    adjustment: int
    reason: Optional[str] = None

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        adjustment = parse_int(payload.get('adjustment'), 'adjustment')
        if adjustment not in CREDIT_ADJUSTMENT_STEPS:
            raise ValidationError(
                "'adjustment' must be one of ±5, ±10, ±15 or ±20.", field='adjustment'
            )
        return cls(adjustment, parse_description(payload.get('reason'), 'reason'))


@dataclass(frozen=True)
class UpdateStudentCmd:
    """Partial update; fields left out of the payload stay as they are."""
    name: Optional[str] = None
    weekly_allowance: Optional[Decimal] = None

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        name = payload.get('name')
        weekly_allowance = payload.get('weekly_allowance')
        if name is None and weekly_allowance is None:
            raise ValidationError("Provide 'name' or 'weekly_allowance' to update.", field='name')
        if name is not None:
            if not isinstance(name, str) or not name.strip():
                raise ValidationError("'name' must be a non-empty string.", field='name')
            name = name.strip()
            if len(name) > 100:
                raise ValidationError("'name' must be at most 100 characters.", field='name')
        if weekly_allowance is not None:
            weekly_allowance = parse_amount(weekly_allowance, 'weekly_allowance', allow_zero=True)
        return cls(name=name, weekly_allowance=weekly_allowance)


# -------------------- INVESTMENTS --------------------

QUANTITY_STEP = Decimal('0.000001')
ASSET_TYPES = ('stock', 'crypto', 'commodity', 'etf')


def parse_quantity(value, field='quantity'):
    if value is None or isinstance(value, bool):
        raise ValidationError(f"'{field}' is required and must be a number.", field=field)
    try:
        quantity = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"'{field}' must be a number.", field=field)
    if not quantity.is_finite():
        raise ValidationError(f"'{field}' must be a finite number.", field=field)
    quantity = quantity.quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)
    if quantity <= 0:
        raise ValidationError(f"'{field}' must be greater than 0.", field=field)
    return quantity


@dataclass(frozen=True)
class TradeAssetCmd:
    asset_id: int
    quantity: Decimal
    account_type: str = 'investment'

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        # A client-supplied 'price' is ignored; trades use the listed price
        return cls(
            asset_id=parse_id(payload.get('asset_id'), 'asset_id'),
            quantity=parse_quantity(payload.get('quantity')),
            account_type=parse_account_type(payload.get('account_type'), default='investment'),
        )


@dataclass(frozen=True)
class UpsertAssetCmd:
    symbol: str
    current_price: Decimal
    name: Optional[str] = None
    asset_type: str = 'stock'
    min_quantity: Decimal = Decimal('1')
    is_active: bool = True

    @classmethod
    def from_payload(cls, payload):
        payload = _require_mapping(payload)
        symbol = payload.get('symbol')
        if not isinstance(symbol, str) or not symbol.strip():
            raise ValidationError("'symbol' is required.", field='symbol')
        symbol = symbol.strip().upper()
        if len(symbol) > 20:
            raise ValidationError("'symbol' must be at most 20 characters.", field='symbol')
        asset_type = payload.get('asset_type', 'stock')
        if asset_type not in ASSET_TYPES:
            raise ValidationError(
                f"'asset_type' must be one of: {', '.join(ASSET_TYPES)}.", field='asset_type'
            )
        min_quantity = payload.get('min_quantity')
        return cls(
            symbol=symbol,
            current_price=parse_amount(payload.get('current_price'), 'current_price'),
            name=parse_description(payload.get('name'), 'name'),
            asset_type=asset_type,
            min_quantity=parse_quantity(min_quantity, 'min_quantity') if min_quantity is not None else Decimal('1'),
            is_active=parse_bool(payload.get('is_active'), 'is_active', default=True),
        )
