"""
Payment schedule reconciliation engine.

Keeps an invoice's installments consistent with its total. The engine works on
immutable ``Schedule`` values and never touches the database: every operation
returns a ``ScheduleOutcome`` carrying a brand new tuple of schedules plus the
user-facing notices produced along the way. Illegal operations raise
``ScheduleError`` and leave the input untouched.

Rules:
- ``paid`` schedules keep their amount when the invoice total changes; only
  their percentage is recomputed.
- unpaid schedules absorb whatever the paid ones do not cover, proportionally
  to their current percentages.
- amount and percentage of a ``paid`` schedule cannot be edited directly.
"""
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal

from django.db import models

from apps.invoices.money import (
    HUNDRED,
    ZERO,
    amount_from_percentage,
    format_currency,
    ordinal,
    percentage_from_amount,
    round_percentage,
    to_decimal,
)

logger = logging.getLogger(__name__)

TOLERANCE = Decimal("0.01")


class ScheduleStatus(models.TextChoices):
    UNPAID = "unpaid", "Unpaid"
    PAID = "paid", "Paid"
    WRITE_OFF = "write-off", "Write-off"


class ScheduleError(ValueError):
    def __init__(self, code: str, detail: str, fields: dict | None = None, status_code: int = 400):
        super().__init__(detail)
        self.code = code
        self.detail = detail
        self.fields = fields or {}
        self.status_code = status_code


@dataclass(frozen=True)
class Schedule:
    id: str
    description: str
    due_date: date | None
    percentage: Decimal
    amount: Decimal
    status: str = ScheduleStatus.UNPAID
    payment_date: date | None = None
    is_auto_description: bool = True

    @property
    def is_paid(self):
        return self.status == ScheduleStatus.PAID


@dataclass(frozen=True)
class ScheduleCheck:
    total_percentage: Decimal
    is_valid: bool
    difference: Decimal

    @property
    def warning(self):
        if self.is_valid:
            return ""
        return f"Total payment percentage is {round_percentage(self.total_percentage)}%. It should be exactly 100%."

    def as_dict(self):
        return {
            "total_percentage": str(round_percentage(self.total_percentage)),
            "is_valid": self.is_valid,
            "difference": str(round_percentage(self.difference)),
        }


@dataclass(frozen=True)
class ScheduleOutcome:
    schedules: tuple
    notices: tuple = ()
    changed: bool = True


@dataclass(frozen=True)
class SetAmount:
    value: Decimal


@dataclass(frozen=True)
class SetPercentage:
    value: Decimal


@dataclass(frozen=True)
class SetStatus:
    value: str


@dataclass(frozen=True)
class SetDueDate:
    value: date | None


@dataclass(frozen=True)
class SetDescription:
    value: str


def new_schedule_id() -> str:
    return str(uuid.uuid4())


def auto_description(position: int) -> str:
    return f"{ordinal(position)} payment"


def check_schedules(schedules) -> ScheduleCheck:
    total = sum((to_decimal(s.percentage) for s in schedules), ZERO)
    difference = abs(total - HUNDRED)
    return ScheduleCheck(total_percentage=total, is_valid=difference < TOLERANCE, difference=difference)


def default_schedule(total, due_date=None, schedule_id=None) -> Schedule:
    return Schedule(
        id=schedule_id or new_schedule_id(),
        description=auto_description(1),
        due_date=due_date or date.today(),
        percentage=HUNDRED,
        amount=to_decimal(total),
    )


def _differs(left, right):
    return abs(to_decimal(left) - to_decimal(right)) > TOLERANCE


@dataclass
class ScheduleEngine:
    """Operations over one invoice's schedule list.

    ``editable`` replaces any ambient "can this user edit?" lookup: callers decide
    it up front and every mutation is rejected when it is false.
    """

    schedules: tuple
    total: Decimal
    editable: bool = True
    currency: str = "USD"
    today: date | None = None
    id_factory: object = field(default=new_schedule_id, repr=False)

    def __post_init__(self):
        self.schedules = tuple(self.schedules)
        self.total = to_decimal(self.total)

    def check(self) -> ScheduleCheck:
        return check_schedules(self.schedules)

    def _today(self):
        return self.today or date.today()

    def _require_editable(self):
        if not self.editable:
            raise ScheduleError("read_only", "Payment schedules are read-only for this invoice.", status_code=403)

    def _index_of(self, schedule_id):
        for index, schedule in enumerate(self.schedules):
            if str(schedule.id) == str(schedule_id):
                return index
        raise ScheduleError("schedule_not_found", "Payment schedule not found.", status_code=404)

    def _replace_at(self, index, schedule):
        updated = list(self.schedules)
        updated[index] = schedule
        return tuple(updated)

    # -- reconciliation -------------------------------------------------

    def reconcile(self, new_total) -> ScheduleOutcome:
        new_total = to_decimal(new_total)
        if not self.schedules:
            return ScheduleOutcome(self.schedules, changed=False)

        paid = [s for s in self.schedules if s.is_paid]
        unpaid = [s for s in self.schedules if not s.is_paid]
        total_paid = sum((to_decimal(s.amount) for s in paid), ZERO)
        remaining = new_total - total_paid
        logger.debug(
            "Reconciling %s schedules to total %s: %s paid (%s), %s unpaid, remaining %s",
            len(self.schedules),
            new_total,
            len(paid),
            total_paid,
            len(unpaid),
            remaining,
        )

        if remaining < 0:
            raise ScheduleError(
                "paid_exceeds_total",
                "Invoice total is less than already paid amounts. Please adjust manually.",
                fields={"total": str(new_total), "paid": str(total_paid)},
            )

        unpaid_percentage = sum((to_decimal(s.percentage) for s in unpaid), ZERO)
        updated = []
        for schedule in self.schedules:
            if schedule.is_paid:
                updated.append(replace(schedule, percentage=percentage_from_amount(new_total, schedule.amount)))
                continue
            if unpaid_percentage > 0:
                proportion = to_decimal(schedule.percentage) / unpaid_percentage
            else:
                proportion = Decimal(1) / Decimal(len(unpaid))
            new_amount = remaining * proportion
            if new_total > 0:
                new_percentage = percentage_from_amount(new_total, new_amount)
            else:
                # A zero total has no proportions of its own; keep the current split.
                new_percentage = schedule.percentage
            updated.append(replace(schedule, amount=new_amount, percentage=new_percentage))

        changed = any(
            _differs(after.amount, before.amount) or _differs(after.percentage, before.percentage)
            for before, after in zip(self.schedules, updated)
        )
        if not changed:
            logger.debug("Reconciliation produced no changes")
            return ScheduleOutcome(self.schedules, changed=False)

        notices = ()
        if paid and unpaid:
            notices = (
                f"Payment schedules adjusted. {len(paid)} paid payment(s) unchanged, "
                f"{len(unpaid)} unpaid payment(s) redistributed.",
            )
        return ScheduleOutcome(tuple(updated), notices=notices)

    # -- mutations ------------------------------------------------------

    def add(self, due_date, percentage=None, amount=None, status=ScheduleStatus.UNPAID) -> ScheduleOutcome:
        self._require_editable()
        if not due_date or (percentage is None and amount is None):
            raise ScheduleError("missing_fields", "Please fill in all fields")
        if status not in ScheduleStatus.values:
            raise ScheduleError("invalid_status", f"Unknown payment status: {status}")

        if percentage is not None:
            percentage = to_decimal(percentage)
            amount = amount_from_percentage(self.total, percentage)
        else:
            amount = to_decimal(amount)
            if amount <= 0:
                raise ScheduleError("invalid_amount", "Amount must be greater than 0")
            percentage = percentage_from_amount(self.total, amount)

        if percentage <= 0 or percentage > HUNDRED:
            raise ScheduleError("invalid_percentage", "Percentage must be greater than 0 and at most 100")

        new_schedule = Schedule(
            id=self.id_factory(),
            description=auto_description(len(self.schedules) + 1),
            due_date=due_date,
            percentage=percentage,
            amount=amount,
            status=status,
            payment_date=self._today() if status == ScheduleStatus.PAID else None,
        )

        current = self.check().total_percentage
        excess = current + percentage - HUNDRED
        if excess <= 0:
            return ScheduleOutcome(self.schedules + (new_schedule,))

        for index in range(len(self.schedules) - 1, -1, -1):
            candidate = self.schedules[index]
            if candidate.is_paid:
                continue
            adjusted_percentage = max(ZERO, to_decimal(candidate.percentage) - excess)
            adjusted = replace(
                candidate,
                percentage=adjusted_percentage,
                amount=amount_from_percentage(self.total, adjusted_percentage),
            )
            deducted = to_decimal(candidate.percentage) - adjusted_percentage
            notice = (
                f"Adjusted {candidate.description or 'previous payment'} by {round_percentage(deducted)}% "
                f"({format_currency(amount_from_percentage(self.total, deducted), self.currency)}) "
                "to accommodate new payment"
            )
            return ScheduleOutcome(self._replace_at(index, adjusted) + (new_schedule,), notices=(notice,))

        raise ScheduleError(
            "overflow_all_paid",
            "Cannot add payment: would exceed 100% and all existing payments are paid.",
        )

    def remove(self, schedule_id) -> ScheduleOutcome:
        self._require_editable()
        index = self._index_of(schedule_id)
        if self.schedules[index].is_paid:
            raise ScheduleError("paid_locked", "Cannot remove a paid payment schedule")

        remaining = self.schedules[:index] + self.schedules[index + 1:]
        relabelled = tuple(
            replace(schedule, description=auto_description(position))
            if schedule.is_auto_description
            else schedule
            for position, schedule in enumerate(remaining, start=1)
        )
        return ScheduleOutcome(relabelled, notices=("Payment schedule removed",))

    def update(self, schedule_id, command) -> ScheduleOutcome:
        self._require_editable()
        index = self._index_of(schedule_id)
        schedule = self.schedules[index]

        if isinstance(command, (SetAmount, SetPercentage)):
            if schedule.is_paid:
                raise ScheduleError("paid_locked", "Cannot modify amount or percentage of a paid payment schedule")
            value = to_decimal(command.value)
            if value < 0:
                raise ScheduleError("invalid_value", "Value cannot be negative")
            if isinstance(command, SetAmount):
                if self.total > 0 and value > self.total:
                    raise ScheduleError("invalid_amount", "Amount cannot exceed the invoice total")
                updated = replace(schedule, amount=value, percentage=percentage_from_amount(self.total, value))
            else:
                if value > HUNDRED:
                    raise ScheduleError("invalid_percentage", "Percentage must be at most 100")
                updated = replace(schedule, percentage=value, amount=amount_from_percentage(self.total, value))
        elif isinstance(command, SetStatus):
            if command.value not in ScheduleStatus.values:
                raise ScheduleError("invalid_status", f"Unknown payment status: {command.value}")
            if command.value == ScheduleStatus.PAID and not schedule.is_paid:
                updated = self._mark_paid(schedule)
            else:
                updated = replace(schedule, status=command.value)
        elif isinstance(command, SetDueDate):
            updated = replace(schedule, due_date=command.value)
        elif isinstance(command, SetDescription):
            text = (command.value or "").strip()
            if text:
                updated = replace(schedule, description=text, is_auto_description=False)
            else:
                updated = replace(schedule, description=auto_description(index + 1), is_auto_description=True)
        else:
            raise TypeError(f"Unsupported schedule command: {command!r}")

        return ScheduleOutcome(self._replace_at(index, updated))

    def set_payment_date(self, schedule_id, payment_date) -> ScheduleOutcome:
        self._require_editable()
        index = self._index_of(schedule_id)
        updated = replace(self.schedules[index], payment_date=payment_date)
        return ScheduleOutcome(self._replace_at(index, updated))

    def _mark_paid(self, schedule):
        amount = to_decimal(schedule.amount)
        if amount == 0 and to_decimal(schedule.percentage) > 0 and self.total > 0:
            amount = amount_from_percentage(self.total, schedule.percentage)
        logger.debug("Marking schedule %s as paid with amount %s", schedule.id, amount)
        return replace(
            schedule,
            status=ScheduleStatus.PAID,
            amount=amount,
            percentage=percentage_from_amount(self.total, amount),
            payment_date=schedule.payment_date or self._today(),
        )
