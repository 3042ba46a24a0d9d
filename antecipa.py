# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#
# [ANTECIPA]
#
# Antecipa is the calculation and bookkeeping core behind receivables anticipation for construction companies. A company
# cedes future receivables, the installments its home buyers owe, and gets cash today at a discount. Money moves from
# receivable to anticipation, to installment, to billing instrument, and this module follows it in four stages:
#
#   1. Pricing. A set of receivables is priced against the company's tiered monthly rates. Pure, no storage.
#
#   2. Credit. Each company has a single active credit line. Approving an anticipation consumes its face value.
#
#   3. Settlement. An approved anticipation is repaid through a payment plan. Each installment knows the receivables
#      that originated it (PMT receivables) and the substitute receivables used to collect it (billing receivables).
#      A reserve fund absorbs the difference between what is collected and what is due, up to a cap.
#
#   4. Billing. Boletos are created against billing receivables, optionally corrected by a monthly price index.
#
# [STORAGE]
#
# Entities live in a storage backend. Two are provided: "InMemoryBackend", for tests and scripts, and "SqliteBackend",
# relational. Atomicity belongs to the backends. The only concurrency primitive assumed is an atomic row update.
#
#   • Credit consumption is a compare-and-swap. The capacity check and the increment are a single statement.
#
#       UPDATE credit_lines SET consumed_cents = consumed_cents + :amt
#        WHERE id = :id AND status = 'Active' AND consumed_cents + :amt <= limit_cents
#
#     Two concurrent approvals whose sum exceeds the available credit can't both succeed.
#
#   • Approval consumes credit and flips the request status in one transaction. Either both land, or neither does.
#
#   • Activating a credit line deactivates the previous one in the same transaction. A partial unique index keeps a
#     single active line per company.
#
#   • A receivable backs at most one billing receivable. This is a UNIQUE constraint checked at write time, not only
#     when candidates are listed.
#
# [ROUNDING]
#
# Values are never rounded internally. Discounts, net values, factors and percentages keep full decimal precision.
# The billed value of a boleto is the single value quantized here, to cents, half up. Credit ledger amounts are whole
# cents by construction: the relational backend stores them as integers.
#
# Pricing is reproducible bit for bit under Decimal semantics, in the default 28 digit context, not under IEEE 754
# double semantics. A float implementation of the same formulas will differ in the last digits of discounts and net
# values, and may differ by a cent once those are rounded for display.
#
# [WEAKNESSES]
#
#   • Credit consumed by an approved anticipation is not refunded if the anticipation is later rejected. Credit only
#     comes back when boletos are paid.
#
#   • Rejecting a request leaves its receivables as "anticipated". Nobody restores them to "eligible_for_anticipation".
#
#   • Amortization schedules are built elsewhere. "InstallmentReconciler.add_installment" trusts the PMT, the balance,
#     and the reserve fund it receives, until the first recalculation overwrites the last two.
#
#   • Whether a PMT receivable may also be attached as a billing receivable is undecided. It's off by default, see
#     "Settings.allow_pmt_source_as_billing".
#

'''
Antecipa, the receivables anticipation core.

Prices anticipation offers with a tiered compound discount, keeps a per-company credit ledger that gates approvals,
drives the anticipation life cycle, reconciles payment plan installments with the receivables that back them, and
corrects billed values with monthly index updates.

Quick tour.

    >>> import datetime, decimal
    >>>
    >>> rates = RateTable(rate_180=decimal.Decimal(2), fee_per_receivable=decimal.Decimal(50))
    >>> offer = price_anticipation([Receivable(1, decimal.Decimal(10000), datetime.date(2024, 4, 1))], rates, datetime.date(2024, 1, 2))
    >>> offer.valor_total, _Q(offer.valor_liquido)
    (Decimal('10000'), Decimal('9337.92'))
'''

# Python.
import os
import sys
import math
import sqlite3
import decimal
import logging
import datetime
import functools
import itertools
import threading
import contextlib
import dataclasses
import typing as t
import importlib.metadata

# Libs.
import typeguard
import dateutil.relativedelta

# Antecipa version.
__version__ = importlib.metadata.version('antecipa') if 'antecipa' in importlib.metadata.packages_distributions() else 'DEV'

# Logger object.
_LOG = logging.getLogger('antecipa')

# Zero as decimal.
_0 = decimal.Decimal()

# One as decimal.
_1 = decimal.Decimal(1)

# One hundred, percentages.
_100 = decimal.Decimal(100)

# Centi factor.
_CENTI = decimal.Decimal('0.01')

# Centesimal quantization.
_Q = functools.partial(decimal.Decimal.quantize, exp=_CENTI, rounding=decimal.ROUND_HALF_UP)

# A month.
_MONTH = dateutil.relativedelta.relativedelta(months=1)

# Rates are monthly, and months have 30 days.
_DAYS_PER_MONTH = decimal.Decimal(30)

# Seconds in a day.
_SECONDS_PER_DAY = 86400

# Discount tiers, by days to due. Upper bounds are inclusive.
#
# As with any bracket table, the last entry only needs a large enough number.
#
_DISCOUNT_TIERS = [
    (180, 'rate_180'),
    (360, 'rate_360'),
    (720, 'rate_720'),
    (sys.maxsize, 'rate_long_term')
]

# Credit line statuses.
_CREDIT_LINE_STATUS = t.Literal['Active', 'Inactive']

# Receivable statuses.
_RECEIVABLE_STATUS = t.Literal['submitted', 'eligible_for_anticipation', 'rejected', 'anticipated', 'paid']

# Anticipation request statuses.
_ANTICIPATION_STATUS = t.Literal['Requested', 'Approved', 'Rejected', 'Completed']

# Boleto emission statuses.
_EMISSION_STATUS = t.Literal['Created', 'Issued', 'Canceled']

# Boleto payment statuses.
_PAYMENT_STATUS = t.Literal['NotApplicable', 'Open', 'Paid', 'Overdue']

# Events the issuing bank sends about a boleto.
_BANK_EVENT = t.Literal['registered', 'paid', 'credited', 'overdue']

# Anticipation state machine. Rejected and Completed are terminal.
_TRANSITIONS: t.Dict[str, t.Tuple[str, ...]] = {
    'Requested': ('Approved', 'Rejected'),
    'Approved': ('Completed', 'Rejected'),
}

# Bank event to payment status.
_BANK_EVENT_STATUS: t.Dict[str, str] = {
    'registered': 'Open',
    'paid': 'Paid',
    'credited': 'Paid',
    'overdue': 'Overdue',
}

# Truthy strings, for environment variables and command line flags.
_TRUTHY = ('s', 'sim', 'y', 'yes', 'true', '1')

# Helpers. {{{
@typeguard.typechecked
def _days_to_due(due_date: datetime.date, eval_date: datetime.date) -> int:
    '''
    Returns the number of days from an evaluation date to a due date, rounded up.

    Plain dates subtract exactly.

    >>> from datetime import date, datetime
    >>>
    >>> _days_to_due(date(2024, 4, 1), date(2024, 1, 2))
    90
    >>> _days_to_due(date(2024, 1, 1), date(2024, 1, 3))
    -2

    When the evaluation date carries a time of day, a started day counts as a whole one.

    >>> _days_to_due(date(2024, 4, 1), datetime(2024, 1, 2, 9, 30))
    90
    >>> _days_to_due(date(2024, 4, 1), datetime(2024, 1, 1, 0, 0))
    91
    '''

    if isinstance(due_date, datetime.datetime):
        due_date = due_date.date()

    if isinstance(eval_date, datetime.datetime):
        due = datetime.datetime.combine(due_date, datetime.time.min, tzinfo=eval_date.tzinfo)

        return math.ceil((due - eval_date).total_seconds() / _SECONDS_PER_DAY)

    return (due_date - eval_date).days

@typeguard.typechecked
def _delta_months(d1: datetime.date, d2: datetime.date) -> int:
    '''
    Returns the number of months between two dates, ignoring days.

    >>> from datetime import date
    >>>
    >>> _delta_months(date(2024, 3, 31), date(2023, 12, 1))
    3
    >>> _delta_months(date(2024, 1, 1), date(2024, 1, 31))
    0
    '''

    return (d1.year - d2.year) * 12 + d1.month - d2.month

def _month_start(value: datetime.date) -> datetime.date:
    if isinstance(value, datetime.datetime):
        value = value.date()

    return value.replace(day=1)

def _month_end(value: datetime.date) -> datetime.date:
    '''
    >>> from datetime import date
    >>>
    >>> _month_end(date(2024, 2, 10))
    datetime.date(2024, 2, 29)
    '''

    return _month_start(value) + _MONTH - datetime.timedelta(days=1)

@typeguard.typechecked
def _as_cents(value: decimal.Decimal) -> int:
    '''
    Converts an amount to integer cents. Refuses fractions of a cent.

    >>> _as_cents(decimal.Decimal('10000.5'))
    1000050
    '''

    cents = value * _100

    if cents != cents.to_integral_value():
        raise ValidationError(f'amount {value} is not a whole number of cents')

    return int(cents)

def _from_cents(value: int) -> decimal.Decimal:
    '''
    >>> _from_cents(1000050)
    Decimal('10000.5')
    >>> _from_cents(5000000)
    Decimal('50000')
    '''

    return decimal.Decimal(value) / _100

def _check_ledger_amount(amount: decimal.Decimal) -> None:
    if amount <= 0:
        raise ValidationError(f'credit amounts must be positive, got {amount}')

    _as_cents(amount)

def _truthy(value: str) -> bool:
    return value.strip().lower() in _TRUTHY
# }}}

# Public API. Errors. {{{
class AntecipaError(Exception):
    '''Base class for every error raised, or returned, by this module.'''

class ValidationError(AntecipaError, ValueError):
    '''Malformed input, or input that breaks a business rule.'''

class NotFoundError(AntecipaError, LookupError):
    '''An unknown entity, or a company without an active credit line.'''

class InsufficientCredit(AntecipaError):
    '''
    The requested amount exceeds the credit available on the company's active line.

    Carries both operands, "available" and "requested", for display. The "shortfall" is their difference.
    '''

    def __init__(self, available: decimal.Decimal, requested: decimal.Decimal, company_id: t.Optional[int] = None) -> None:
        super().__init__(f'insufficient credit: requested {requested}, available {available}')

        self.available = available
        self.requested = requested
        self.company_id = company_id

    @property
    def shortfall(self) -> decimal.Decimal:
        return self.requested - self.available

class InvalidTransition(AntecipaError):
    '''A state machine violation. Carries the "current" and the "requested" statuses.'''

    def __init__(self, current: str, requested: str, entity: str = 'anticipation') -> None:
        super().__init__(f'invalid {entity} status transition from {current} to {requested}')

        self.current = current
        self.requested = requested
        self.entity = entity

class ConflictError(AntecipaError):
    '''A uniqueness violation, detected at write time.'''

    def __init__(self, message: str, receivable_id: t.Optional[int] = None, installment_id: t.Optional[int] = None) -> None:
        super().__init__(message)

        self.receivable_id = receivable_id
        self.installment_id = installment_id

class BackendError(AntecipaError):
    '''The storage backend failed.'''
# }}}

# Public API. Configuration. {{{
@dataclasses.dataclass(frozen=True)
class Settings:
    '''
    Behaviour switches of the engine.

      • "allow_pmt_source_as_billing", when true, a receivable that is the PMT source of an installment may also be
        attached as a billing receivable. Off by default: the business hasn't decided whether this is intended.

      • "candidates_within_installment_month", when true, billing candidates must be due within the calendar month of
        the installment.

      • "include_start_month", when true, index compounding includes the start month. By default the start month is
        the base of the correction, so only the months after it, up to and including the end month, are compounded.

      • "release_credit_on_payment", when true, a paid boleto gives its face value back to the company's credit line.
    '''

    allow_pmt_source_as_billing: bool = False

    candidates_within_installment_month: bool = True

    include_start_month: bool = False

    release_credit_on_payment: bool = True

    @classmethod
    def from_env(cls, environ: t.Optional[t.Mapping[str, str]] = None) -> 'Settings':
        '''
        Reads settings from "ANTECIPA_*" environment variables. Unset variables keep their defaults.

        >>> Settings.from_env({'ANTECIPA_INCLUDE_START_MONTH': 'sim'}).include_start_month
        True
        '''

        env = os.environ if environ is None else environ
        kwa: t.Dict[str, bool] = {}

        for field in dataclasses.fields(cls):
            key = f'ANTECIPA_{field.name.upper()}'

            if key in env:
                kwa[field.name] = _truthy(env[key])

        return cls(**kwa)
# }}}

# Public API. Entities. {{{
@dataclasses.dataclass(frozen=True)
class RateTable:
    '''
    The tiered discount rates of a company, plus a flat fee.

      • "rate_180", "rate_360", "rate_720" and "rate_long_term" are monthly percentage rates, i.e. 2 means 2% a month.
        They apply to receivables due within 180, 360 and 720 days, and beyond. Upper bounds are inclusive.

      • "fee_per_receivable" is a flat amount deducted from each priced receivable.

      • "operation_days_limit" is the maximum number of days to due of an anticipated receivable. None means no limit.
    '''

    rate_180: decimal.Decimal = _0

    rate_360: decimal.Decimal = _0

    rate_720: decimal.Decimal = _0

    rate_long_term: decimal.Decimal = _0

    fee_per_receivable: decimal.Decimal = _0

    operation_days_limit: t.Optional[int] = None

    def __post_init__(self) -> None:
        for name in ('rate_180', 'rate_360', 'rate_720', 'rate_long_term', 'fee_per_receivable'):
            value = getattr(self, name)

            if value is None:
                raise ValidationError(f'rate tier "{name}" is missing')

            elif not isinstance(value, decimal.Decimal):
                raise ValidationError(f'rate tier "{name}" must be a decimal, got {type(value).__name__}')

            elif value < 0:
                raise ValidationError(f'rate tier "{name}" must not be negative, got {value}')

        if self.operation_days_limit is not None and self.operation_days_limit < 0:
            raise ValidationError(f'"operation_days_limit" must not be negative, got {self.operation_days_limit}')

    @typeguard.typechecked
    def rate_for(self, days_to_due: int) -> decimal.Decimal:
        '''
        Selects the tier rate for a number of days to due.

        >>> from decimal import Decimal
        >>>
        >>> rates = RateTable(Decimal(2), Decimal(3), Decimal(4), Decimal(5))
        >>> rates.rate_for(180), rates.rate_for(181), rates.rate_for(720), rates.rate_for(721)
        (Decimal('2'), Decimal('3'), Decimal('4'), Decimal('5'))
        '''

        return next(getattr(self, name) for maximum, name in _DISCOUNT_TIERS if days_to_due <= maximum)

@dataclasses.dataclass
class CreditLine:
    '''
    A company's credit line.

    A company may have many lines over time, but at most one is "Active". Approvals consume its credit; paid boletos
    release it. "available_credit" is derived, never stored.
    '''

    company_id: int

    rates: RateTable = dataclasses.field(default_factory=RateTable)

    credit_limit: decimal.Decimal = _0

    consumed_credit: decimal.Decimal = _0

    status: _CREDIT_LINE_STATUS = 'Inactive'

    id: int = 0

    @property
    def available_credit(self) -> decimal.Decimal:
        return self.credit_limit - self.consumed_credit

    @property
    def operation_days_limit(self) -> t.Optional[int]:
        return self.rates.operation_days_limit

@dataclasses.dataclass
class Receivable:
    '''A buyer's obligation to pay a fixed amount by a due date. Never deleted, only re-statused.'''

    project_id: int

    amount: decimal.Decimal

    due_date: datetime.date

    buyer_name: str = ''

    buyer_tax_id: str = ''

    status: _RECEIVABLE_STATUS = 'submitted'

    id: int = 0

@dataclasses.dataclass
class AnticipationRequest:
    '''
    A request to anticipate a set of receivables.

    Keeps a snapshot of the rates used at pricing time, "rates", so later changes to the credit line don't alter it.
    "receivable_ids" are the anticipated receivables, in submission order.
    '''

    company_id: int

    project_id: int

    valor_total: decimal.Decimal

    valor_liquido: decimal.Decimal

    quantidade_recebiveis: int

    rates: RateTable = dataclasses.field(default_factory=RateTable)

    receivable_ids: t.Tuple[int, ...] = ()

    status: _ANTICIPATION_STATUS = 'Requested'

    id: int = 0

@dataclasses.dataclass
class PaymentPlan:
    '''
    The repayment plan of an approved anticipation. One per anticipation.

    When "index_id" and "adjustment_base_date" are set, boletos of this plan are corrected by that index, from the
    base date's month to the month the boleto is created.
    '''

    anticipation_id: int

    project_id: int

    billing_day: int

    reserve_fund_cap: decimal.Decimal = _0

    index_id: t.Optional[int] = None

    adjustment_base_date: t.Optional[datetime.date] = None

    id: int = 0

@dataclasses.dataclass
class Installment:
    '''
    One repayment slice of a payment plan.

      • "pmt" is the amount due.

      • "receivables_total" is the face value of the billing receivables attached to it.

      • "outstanding_balance" is what remains of the anticipation after this installment.

      • "reserve_fund" is the accumulated surplus (or shortfall) of collections over PMTs, capped.

      • "refund" is what exceeded the cap, owed back to the company.
    '''

    plan_id: int

    installment_number: int

    due_date: datetime.date

    pmt: decimal.Decimal

    receivables_total: decimal.Decimal = _0

    outstanding_balance: decimal.Decimal = _0

    reserve_fund: decimal.Decimal = _0

    refund: decimal.Decimal = _0

    id: int = 0

@dataclasses.dataclass
class PmtReceivable:
    '''Provenance link: a receivable that originated an installment. Read only.'''

    installment_id: int

    receivable_id: int

    id: int = 0

@dataclasses.dataclass
class BillingReceivable:
    '''A substitute receivable used to collect an installment, with its own due date.'''

    installment_id: int

    receivable_id: int

    new_due_date: datetime.date

    id: int = 0

@typeguard.typechecked
def derive_payment_status(emission_status: _EMISSION_STATUS, payment_status: _PAYMENT_STATUS) -> _PAYMENT_STATUS:
    '''
    Returns the payment status a boleto must have, given its emission status.

    A boleto that isn't issued can't be paid.

    >>> derive_payment_status('Created', 'Paid')
    'NotApplicable'
    >>> derive_payment_status('Canceled', 'Open')
    'NotApplicable'

    Issuing opens the boleto, but keeps a payment status it already had.

    >>> derive_payment_status('Issued', 'NotApplicable')
    'Open'
    >>> derive_payment_status('Issued', 'Overdue')
    'Overdue'
    '''

    if emission_status in ('Created', 'Canceled'):
        return 'NotApplicable'

    elif payment_status == 'NotApplicable':
        return 'Open'

    else:
        return payment_status

@dataclasses.dataclass
class Boleto:
    '''
    A billing instrument issued against a billing receivable.

    "billed_value" is the face value corrected by "adjustment_percentage", rounded to cents. When there's no index,
    the percentage is None and the billed value is the face value. The payment status always agrees with the emission
    status, see "derive_payment_status".
    '''

    billing_receivable_id: int

    face_value: decimal.Decimal

    due_date: datetime.date

    index_id: t.Optional[int] = None

    adjustment_percentage: t.Optional[decimal.Decimal] = None

    billed_value: decimal.Decimal = _0

    emission_status: _EMISSION_STATUS = 'Created'

    payment_status: _PAYMENT_STATUS = 'NotApplicable'

    external_id: t.Optional[str] = None

    id: int = 0

    def __post_init__(self) -> None:
        self.payment_status = derive_payment_status(self.emission_status, self.payment_status)

@dataclasses.dataclass
class Index:
    '''A named economic index, like IPCA or INCC.'''

    name: str

    description: str = ''

    id: int = 0

@dataclasses.dataclass
class IndexUpdate:
    '''The adjustment of an index for a month. "reference_month" is always the first day of the month.'''

    index_id: int

    reference_month: datetime.date

    monthly_adjustment: decimal.Decimal

    id: int = 0

    def __post_init__(self) -> None:
        self.reference_month = _month_start(self.reference_month)
# }}}

# Public API. Results. {{{
@dataclasses.dataclass
class PricedReceivable:
    receivable_id: int

    amount: decimal.Decimal

    due_date: datetime.date

    days_to_due: int

    rate: decimal.Decimal

    growth_factor: decimal.Decimal

    discount: decimal.Decimal

    fee: decimal.Decimal

    net: decimal.Decimal

@dataclasses.dataclass
class PricedOffer:
    '''
    A priced anticipation offer.

    "valor_total" is the sum of face amounts, "valor_liquido" the sum of net values, "quantidade" the number of
    receivables. Values are not rounded; use "_Q" or a formatter to display them.
    '''

    valor_total: decimal.Decimal

    valor_liquido: decimal.Decimal

    quantidade: int

    items: t.List[PricedReceivable]

    rates: RateTable

    eval_date: datetime.date

@dataclasses.dataclass
class CapacityCheck:
    ok: bool

    available: decimal.Decimal

    requested: decimal.Decimal

    company_id: int

    line_id: int

    @property
    def error(self) -> t.Optional[InsufficientCredit]:
        return None if self.ok else InsufficientCredit(self.available, self.requested, self.company_id)

@dataclasses.dataclass
class TransitionOutcome:
    '''
    The result of a life cycle transition.

    On success, "anticipation" is the updated request and "error" is None. On insufficient credit, "anticipation" is
    left untouched and "error" holds an unraised InsufficientCredit instance.
    '''

    anticipation: AnticipationRequest

    error: t.Optional[InsufficientCredit] = None

    @property
    def ok(self) -> bool:
        return self.error is None

@dataclasses.dataclass
class BillingSource:
    billing_receivable: BillingReceivable

    receivable: Receivable

@dataclasses.dataclass
class InstallmentSources:
    installment: Installment

    pmt: t.List[Receivable]

    billing: t.List[BillingSource]

@dataclasses.dataclass
class RejectedItem:
    '''An item a batch operation refused, and why.'''

    item_id: int

    error: AntecipaError

    @property
    def reason(self) -> str:
        return str(self.error)

@dataclasses.dataclass
class AttachResult:
    installment_id: int

    created: t.List[BillingReceivable] = dataclasses.field(default_factory=list)

    rejected: t.List[RejectedItem] = dataclasses.field(default_factory=list)

    @property
    def warning(self) -> t.Optional[str]:
        if self.rejected:
            return 'receivables not attached: ' + ', '.join(f'#{x.item_id} ({x.reason})' for x in self.rejected)

        return None

@dataclasses.dataclass
class ReconciliationSummary:
    '''
    Advisory totals for an installment.

    "difference" is "pmt - total_selected". Positive means under-collateralized, negative over-collateralized. Neither
    blocks anything.
    '''

    installment_id: int

    pmt: decimal.Decimal

    total_selected: decimal.Decimal

    difference: decimal.Decimal

    count: int

@dataclasses.dataclass
class CompoundAdjustment:
    '''
    The compound adjustment of an index over a range of months.

    "months" are the updates used, in chronological order. Months without updates are absent, i.e., count as 0%.
    '''

    index_id: int

    start_month: datetime.date

    end_month: datetime.date

    factor: decimal.Decimal

    percentage: decimal.Decimal

    applied_months: int

    months: t.List[IndexUpdate]

@dataclasses.dataclass
class BoletoBatch:
    created: t.List[Boleto] = dataclasses.field(default_factory=list)

    errors: t.List[RejectedItem] = dataclasses.field(default_factory=list)
# }}}

# Public API. Pricing. {{{
@functools.cache
@typeguard.typechecked
def calculate_growth_factor(rate: decimal.Decimal, days: int) -> decimal.Decimal:
    '''
    Calculates the growth factor of a monthly percentage rate over a number of days, in 30-day months.

    >>> calculate_growth_factor(decimal.Decimal(2), 90)
    Decimal('1.061208')
    >>> calculate_growth_factor(decimal.Decimal(0), 400)
    Decimal('1')
    '''

    if rate:
        return (_1 + rate / _100) ** (decimal.Decimal(days) / _DAYS_PER_MONTH)

    else:
        return _1

@typeguard.typechecked
def price_receivable(receivable: Receivable, rates: RateTable, eval_date: datetime.date) -> PricedReceivable:
    '''
    Prices a single receivable.

    The discount compounds the tier rate over the days to due; the flat fee comes on top of it.

      days = ceil((due_date - eval_date) / 1 day)
      discount = amount × ((1 + rate / 100) ^ (days / 30) - 1)
      net = amount - discount - fee

    Refuses past due receivables, and receivables due beyond the operation days limit.
    '''

    days = _days_to_due(receivable.due_date, eval_date)

    if receivable.amount <= 0:
        raise ValidationError(f'receivable #{receivable.id} must have a positive amount, got {receivable.amount}')

    elif days < 0:
        raise ValidationError(f'receivable #{receivable.id} is past due, {receivable.due_date} precedes {eval_date}')

    elif rates.operation_days_limit is not None and days > rates.operation_days_limit:
        raise ValidationError(f'receivable #{receivable.id} is due in {days} days, beyond the operation limit of {rates.operation_days_limit} days')

    rate = rates.rate_for(days)
    fac = calculate_growth_factor(rate, days)
    dsc = receivable.amount * (fac - _1)  # ATTENTION: do not quantize here.
    net = receivable.amount - dsc - rates.fee_per_receivable

    return PricedReceivable(
        receivable_id=receivable.id,
        amount=receivable.amount,
        due_date=receivable.due_date,
        days_to_due=days,
        rate=rate,
        growth_factor=fac,
        discount=dsc,
        fee=rates.fee_per_receivable,
        net=net
    )

@typeguard.typechecked
def price_anticipation(receivables: t.Sequence[Receivable], rates: RateTable, eval_date: t.Optional[datetime.date] = None) -> PricedOffer:
    '''
    Prices an anticipation offer for a set of receivables.

    To understand this function, consider the sentence:

      "How much cash do receivables R yield today, at rates T, evaluated at date D?"

    The parameters are:

      • "receivables", the receivables R. Only "id", "amount" and "due_date" matter here.

      • "rates", the rate table T, with the flat fee and the operation days limit.

      • "eval_date", the evaluation date D. Defaults to now. A datetime counts a started day as a whole one.

    Returns a PricedOffer. This function is pure: same inputs, same output, no storage touched.

    Every receivable must be within the operation window. A receivable beyond it is refused, never clamped.

    >>> from decimal import Decimal
    >>> from datetime import date
    >>>
    >>> rates = RateTable(rate_180=Decimal(2), fee_per_receivable=Decimal(50))
    >>> offer = price_anticipation([Receivable(1, Decimal(10000), date(2024, 4, 1))], rates, date(2024, 1, 2))
    >>> offer.items[0].discount, offer.valor_liquido
    (Decimal('612.080000'), Decimal('9337.920000'))
    '''

    if not receivables:
        raise ValidationError('at least one receivable is required')

    if eval_date is None:
        eval_date = datetime.datetime.now()

    items = [price_receivable(x, rates, eval_date) for x in receivables]

    return PricedOffer(
        valor_total=sum((x.amount for x in items), _0),
        valor_liquido=sum((x.net for x in items), _0),
        quantidade=len(items),
        items=items,
        rates=rates,
        eval_date=eval_date
    )
# }}}

# Public API. Index correction. {{{
@typeguard.typechecked
def calculate_compound_factor(updates: t.Sequence[IndexUpdate]) -> decimal.Decimal:
    '''
    Compounds monthly adjustments, in chronological order.

    >>> from decimal import Decimal
    >>> from datetime import date
    >>>
    >>> calculate_compound_factor([])
    Decimal('1')
    >>> calculate_compound_factor([IndexUpdate(1, date(2024, 2, 1), Decimal('0.5')), IndexUpdate(1, date(2024, 1, 1), Decimal('1'))])
    Decimal('1.01505')
    '''

    fac = _1

    for x in sorted(updates, key=lambda x: x.reference_month):
        fac = fac * (_1 + x.monthly_adjustment / _100)

        _LOG.debug(x)

    return fac

@typeguard.typechecked
def calculate_billed_value(face_value: decimal.Decimal, percentage: decimal.Decimal) -> decimal.Decimal:
    '''
    Applies an adjustment percentage to a face value. The result is rounded to cents, half up.

    >>> calculate_billed_value(decimal.Decimal('1000'), decimal.Decimal('1.2345'))
    Decimal('1012.35')
    '''

    return _Q(face_value * (_1 + percentage / _100))
# }}}

# Public API. Storage backends. {{{
class StorageBackend:
    '''
    Storage primitives for the entities of this module.

    Implementations must make every method atomic. Those documented as compare-and-swap must check and write in a
    single step. Reads return copies: mutating a returned entity never changes the store.

    Unknown ids raise NotFoundError. Uniqueness violations raise ConflictError.
    '''

    # Credit lines.
    def add_credit_line(self, line: CreditLine) -> CreditLine:
        '''Stores a new line. Fails with ConflictError if it's active and the company already has an active line.'''

        raise NotImplementedError()

    def get_credit_line(self, line_id: int) -> CreditLine:
        raise NotImplementedError()

    def get_credit_lines(self, company_id: int) -> t.List[CreditLine]:
        raise NotImplementedError()

    def update_credit_line_terms(self, line_id: int, rates: RateTable, credit_limit: decimal.Decimal) -> CreditLine:
        '''Replaces rates and limit. Never touches the status or the consumed credit.'''

        raise NotImplementedError()

    def activate_credit_line(self, company_id: int, line_id: int) -> CreditLine:
        '''Activates a line and deactivates every other line of the company. All or nothing.'''

        raise NotImplementedError()

    def try_consume_credit(self, line_id: int, amount: decimal.Decimal) -> bool:
        '''Compare-and-swap. Adds the amount to the consumed credit iff the line is active and the limit holds.'''

        raise NotImplementedError()

    def release_credit(self, line_id: int, amount: decimal.Decimal) -> CreditLine:
        '''Subtracts the amount from the consumed credit, never going below zero.'''

        raise NotImplementedError()

    # Receivables.
    def add_receivable(self, receivable: Receivable) -> Receivable:
        raise NotImplementedError()

    def get_receivable(self, receivable_id: int) -> Receivable:
        raise NotImplementedError()

    def get_receivables(self, project_id: t.Optional[int] = None, status: t.Optional[str] = None, due_from: t.Optional[datetime.date] = None, due_to: t.Optional[datetime.date] = None) -> t.List[Receivable]:
        '''Filters receivables. Due date bounds are inclusive. Sorted by due date, then id.'''

        raise NotImplementedError()

    # Anticipations.
    def add_anticipation(self, anticipation: AnticipationRequest) -> AnticipationRequest:
        '''
        Stores a request with its receivable links, and flips every linked receivable from "eligible_for_anticipation"
        to "anticipated". Fails with ConflictError, storing nothing, if any of them isn't eligible anymore.
        '''

        raise NotImplementedError()

    def get_anticipation(self, anticipation_id: int) -> AnticipationRequest:
        raise NotImplementedError()

    def get_anticipations(self, company_id: t.Optional[int] = None, status: t.Optional[str] = None) -> t.List[AnticipationRequest]:
        raise NotImplementedError()

    def approve_anticipation(self, anticipation_id: int, line_id: int, amount: decimal.Decimal) -> bool:
        '''
        Consumes credit and approves a request, in a single transaction.

        Raises InvalidTransition if the request isn't "Requested". Returns False, changing nothing, if the line can't
        afford the amount.
        '''

        raise NotImplementedError()

    def set_anticipation_status(self, anticipation_id: int, current: str, target: str) -> bool:
        '''Compare-and-swap on the request status.'''

        raise NotImplementedError()

    # Payment plans.
    def add_payment_plan(self, plan: PaymentPlan) -> PaymentPlan:
        '''Fails with ConflictError if the anticipation already has a plan.'''

        raise NotImplementedError()

    def get_payment_plan(self, plan_id: int) -> PaymentPlan:
        raise NotImplementedError()

    def add_installment(self, installment: Installment) -> Installment:
        '''Fails with ConflictError if the plan already has an installment with the same number.'''

        raise NotImplementedError()

    def get_installment(self, installment_id: int) -> Installment:
        raise NotImplementedError()

    def get_installments(self, plan_id: int) -> t.List[Installment]:
        '''Sorted by installment number.'''

        raise NotImplementedError()

    def update_installment(self, installment: Installment) -> Installment:
        '''Writes the derived fields: receivables total, outstanding balance, reserve fund and refund.'''

        raise NotImplementedError()

    def add_pmt_receivable(self, link: PmtReceivable) -> PmtReceivable:
        raise NotImplementedError()

    def get_pmt_receivables(self, installment_id: t.Optional[int] = None, receivable_id: t.Optional[int] = None) -> t.List[PmtReceivable]:
        raise NotImplementedError()

    def add_billing_receivable(self, link: BillingReceivable) -> BillingReceivable:
        '''Fails with ConflictError if the receivable already backs a billing receivable, of any installment.'''

        raise NotImplementedError()

    def get_billing_receivable(self, billing_receivable_id: int) -> BillingReceivable:
        raise NotImplementedError()

    def get_billing_receivables(self, installment_id: t.Optional[int] = None, receivable_id: t.Optional[int] = None) -> t.List[BillingReceivable]:
        raise NotImplementedError()

    def delete_billing_receivable(self, billing_receivable_id: int) -> BillingReceivable:
        '''Deletes a billing receivable and its boleto, if any. Returns the deleted link.'''

        raise NotImplementedError()

    # Boletos.
    def add_boleto(self, boleto: Boleto) -> Boleto:
        '''Fails with ConflictError if the billing receivable already has a boleto.'''

        raise NotImplementedError()

    def get_boleto(self, boleto_id: int) -> Boleto:
        raise NotImplementedError()

    def get_boleto_for(self, billing_receivable_id: int) -> t.Optional[Boleto]:
        raise NotImplementedError()

    def swap_boleto_status(self, boleto_id: int, expected: t.Tuple[str, str], target: t.Tuple[str, str]) -> bool:
        '''Compare-and-swap on the (emission status, payment status) pair.'''

        raise NotImplementedError()

    # Indexes.
    def add_index(self, index: Index) -> Index:
        raise NotImplementedError()

    def get_index(self, index_id: int) -> Index:
        raise NotImplementedError()

    def add_index_update(self, update: IndexUpdate) -> IndexUpdate:
        '''Fails with ConflictError if the index already has an update for the month.'''

        raise NotImplementedError()

    def get_index_updates(self, index_id: int, begin: t.Optional[datetime.date] = None, end: t.Optional[datetime.date] = None) -> t.List[IndexUpdate]:
        '''
        Returns the updates of an index between the begin and end months, in chronological order.

        The begin and end months are inclusive.
        '''

        raise NotImplementedError()

class InMemoryBackend(StorageBackend):
    '''
    Keeps every entity in dictionaries, behind a single re-entrant lock.

    Each method holds the lock for its whole duration, which makes it atomic with respect to the others. Nothing
    survives the process, so this backend suits tests and scripts, not production.
    '''

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)

        self._credit_lines: t.Dict[int, CreditLine] = {}
        self._receivables: t.Dict[int, Receivable] = {}
        self._anticipations: t.Dict[int, AnticipationRequest] = {}
        self._plans: t.Dict[int, PaymentPlan] = {}
        self._installments: t.Dict[int, Installment] = {}
        self._pmt_receivables: t.Dict[int, PmtReceivable] = {}
        self._billing_receivables: t.Dict[int, BillingReceivable] = {}
        self._boletos: t.Dict[int, Boleto] = {}
        self._indexes: t.Dict[int, Index] = {}
        self._index_updates: t.Dict[int, IndexUpdate] = {}

    @staticmethod
    def _get(table: t.Dict[int, t.Any], key: int, name: str) -> t.Any:
        if key not in table:
            raise NotFoundError(f'{name} #{key} not found')

        return table[key]

    def _insert(self, table: t.Dict[int, t.Any], entity: t.Any) -> t.Any:
        entity = dataclasses.replace(entity, id=next(self._ids))

        table[entity.id] = entity

        return dataclasses.replace(entity)

    # Credit lines.
    def add_credit_line(self, line: CreditLine) -> CreditLine:
        with self._lock:
            if line.status == 'Active' and any(x.status == 'Active' for x in self._credit_lines.values() if x.company_id == line.company_id):
                raise ConflictError(f'company #{line.company_id} already has an active credit line')

            return self._insert(self._credit_lines, line)

    def get_credit_line(self, line_id: int) -> CreditLine:
        with self._lock:
            return dataclasses.replace(self._get(self._credit_lines, line_id, 'credit line'))

    def get_credit_lines(self, company_id: int) -> t.List[CreditLine]:
        with self._lock:
            return [dataclasses.replace(x) for x in self._credit_lines.values() if x.company_id == company_id]

    def update_credit_line_terms(self, line_id: int, rates: RateTable, credit_limit: decimal.Decimal) -> CreditLine:
        with self._lock:
            line = self._get(self._credit_lines, line_id, 'credit line')

            line.rates = rates
            line.credit_limit = credit_limit

            return dataclasses.replace(line)

    def activate_credit_line(self, company_id: int, line_id: int) -> CreditLine:
        with self._lock:
            line = self._get(self._credit_lines, line_id, 'credit line')

            if line.company_id != company_id:
                raise NotFoundError(f'credit line #{line_id} not found for company #{company_id}')

            for x in self._credit_lines.values():
                if x.company_id == company_id and x.id != line_id and x.status == 'Active':
                    x.status = 'Inactive'

            line.status = 'Active'

            return dataclasses.replace(line)

    def try_consume_credit(self, line_id: int, amount: decimal.Decimal) -> bool:
        with self._lock:
            line = self._get(self._credit_lines, line_id, 'credit line')

            if line.status != 'Active' or line.consumed_credit + amount > line.credit_limit:
                return False

            line.consumed_credit = line.consumed_credit + amount

            return True

    def release_credit(self, line_id: int, amount: decimal.Decimal) -> CreditLine:
        with self._lock:
            line = self._get(self._credit_lines, line_id, 'credit line')

            line.consumed_credit = max(_0, line.consumed_credit - amount)

            return dataclasses.replace(line)

    # Receivables.
    def add_receivable(self, receivable: Receivable) -> Receivable:
        with self._lock:
            return self._insert(self._receivables, receivable)

    def get_receivable(self, receivable_id: int) -> Receivable:
        with self._lock:
            return dataclasses.replace(self._get(self._receivables, receivable_id, 'receivable'))

    def get_receivables(self, project_id: t.Optional[int] = None, status: t.Optional[str] = None, due_from: t.Optional[datetime.date] = None, due_to: t.Optional[datetime.date] = None) -> t.List[Receivable]:
        with self._lock:
            lst = [
                dataclasses.replace(x) for x in self._receivables.values()
                if (project_id is None or x.project_id == project_id)
                and (status is None or x.status == status)
                and (due_from is None or x.due_date >= due_from)
                and (due_to is None or x.due_date <= due_to)
            ]

        return sorted(lst, key=lambda x: (x.due_date, x.id))

    # Anticipations.
    def add_anticipation(self, anticipation: AnticipationRequest) -> AnticipationRequest:
        with self._lock:
            for rid in anticipation.receivable_ids:
                rec = self._get(self._receivables, rid, 'receivable')

                if rec.status != 'eligible_for_anticipation':
                    raise ConflictError(f'receivable #{rid} is no longer eligible for anticipation', receivable_id=rid)

            for rid in anticipation.receivable_ids:
                self._receivables[rid].status = 'anticipated'

            return self._insert(self._anticipations, anticipation)

    def get_anticipation(self, anticipation_id: int) -> AnticipationRequest:
        with self._lock:
            return dataclasses.replace(self._get(self._anticipations, anticipation_id, 'anticipation'))

    def get_anticipations(self, company_id: t.Optional[int] = None, status: t.Optional[str] = None) -> t.List[AnticipationRequest]:
        with self._lock:
            return [
                dataclasses.replace(x) for x in self._anticipations.values()
                if (company_id is None or x.company_id == company_id) and (status is None or x.status == status)
            ]

    def approve_anticipation(self, anticipation_id: int, line_id: int, amount: decimal.Decimal) -> bool:
        with self._lock:
            ant = self._get(self._anticipations, anticipation_id, 'anticipation')

            if ant.status != 'Requested':
                raise InvalidTransition(ant.status, 'Approved')

            if not self.try_consume_credit(line_id, amount):
                return False

            ant.status = 'Approved'

            return True

    def set_anticipation_status(self, anticipation_id: int, current: str, target: str) -> bool:
        with self._lock:
            ant = self._get(self._anticipations, anticipation_id, 'anticipation')

            if ant.status != current:
                return False

            ant.status = target

            return True

    # Payment plans.
    def add_payment_plan(self, plan: PaymentPlan) -> PaymentPlan:
        with self._lock:
            self._get(self._anticipations, plan.anticipation_id, 'anticipation')

            if any(x.anticipation_id == plan.anticipation_id for x in self._plans.values()):
                raise ConflictError(f'anticipation #{plan.anticipation_id} already has a payment plan')

            return self._insert(self._plans, plan)

    def get_payment_plan(self, plan_id: int) -> PaymentPlan:
        with self._lock:
            return dataclasses.replace(self._get(self._plans, plan_id, 'payment plan'))

    def add_installment(self, installment: Installment) -> Installment:
        with self._lock:
            self._get(self._plans, installment.plan_id, 'payment plan')

            if any(x.plan_id == installment.plan_id and x.installment_number == installment.installment_number for x in self._installments.values()):
                raise ConflictError(f'payment plan #{installment.plan_id} already has installment number {installment.installment_number}')

            return self._insert(self._installments, installment)

    def get_installment(self, installment_id: int) -> Installment:
        with self._lock:
            return dataclasses.replace(self._get(self._installments, installment_id, 'installment'))

    def get_installments(self, plan_id: int) -> t.List[Installment]:
        with self._lock:
            lst = [dataclasses.replace(x) for x in self._installments.values() if x.plan_id == plan_id]

        return sorted(lst, key=lambda x: x.installment_number)

    def update_installment(self, installment: Installment) -> Installment:
        with self._lock:
            ins = self._get(self._installments, installment.id, 'installment')

            ins.receivables_total = installment.receivables_total
            ins.outstanding_balance = installment.outstanding_balance
            ins.reserve_fund = installment.reserve_fund
            ins.refund = installment.refund

            return dataclasses.replace(ins)

    def add_pmt_receivable(self, link: PmtReceivable) -> PmtReceivable:
        with self._lock:
            self._get(self._installments, link.installment_id, 'installment')
            self._get(self._receivables, link.receivable_id, 'receivable')

            if any(x.installment_id == link.installment_id and x.receivable_id == link.receivable_id for x in self._pmt_receivables.values()):
                raise ConflictError(f'receivable #{link.receivable_id} is already a PMT source of installment #{link.installment_id}', link.receivable_id, link.installment_id)

            return self._insert(self._pmt_receivables, link)

    def get_pmt_receivables(self, installment_id: t.Optional[int] = None, receivable_id: t.Optional[int] = None) -> t.List[PmtReceivable]:
        with self._lock:
            return [
                dataclasses.replace(x) for x in self._pmt_receivables.values()
                if (installment_id is None or x.installment_id == installment_id) and (receivable_id is None or x.receivable_id == receivable_id)
            ]

    def add_billing_receivable(self, link: BillingReceivable) -> BillingReceivable:
        with self._lock:
            self._get(self._installments, link.installment_id, 'installment')
            self._get(self._receivables, link.receivable_id, 'receivable')

            for x in self._billing_receivables.values():
                if x.receivable_id == link.receivable_id:
                    raise ConflictError(f'receivable #{link.receivable_id} is already attached to installment #{x.installment_id}', link.receivable_id, x.installment_id)

            return self._insert(self._billing_receivables, link)

    def get_billing_receivable(self, billing_receivable_id: int) -> BillingReceivable:
        with self._lock:
            return dataclasses.replace(self._get(self._billing_receivables, billing_receivable_id, 'billing receivable'))

    def get_billing_receivables(self, installment_id: t.Optional[int] = None, receivable_id: t.Optional[int] = None) -> t.List[BillingReceivable]:
        with self._lock:
            return [
                dataclasses.replace(x) for x in self._billing_receivables.values()
                if (installment_id is None or x.installment_id == installment_id) and (receivable_id is None or x.receivable_id == receivable_id)
            ]

    def delete_billing_receivable(self, billing_receivable_id: int) -> BillingReceivable:
        with self._lock:
            link = self._get(self._billing_receivables, billing_receivable_id, 'billing receivable')

            for key in [k for k, v in self._boletos.items() if v.billing_receivable_id == billing_receivable_id]:
                del self._boletos[key]

            del self._billing_receivables[billing_receivable_id]

            return link

    # Boletos.
    def add_boleto(self, boleto: Boleto) -> Boleto:
        with self._lock:
            self._get(self._billing_receivables, boleto.billing_receivable_id, 'billing receivable')

            if any(x.billing_receivable_id == boleto.billing_receivable_id for x in self._boletos.values()):
                raise ConflictError(f'billing receivable #{boleto.billing_receivable_id} already has a boleto')

            return self._insert(self._boletos, boleto)

    def get_boleto(self, boleto_id: int) -> Boleto:
        with self._lock:
            return dataclasses.replace(self._get(self._boletos, boleto_id, 'boleto'))

    def get_boleto_for(self, billing_receivable_id: int) -> t.Optional[Boleto]:
        with self._lock:
            for x in self._boletos.values():
                if x.billing_receivable_id == billing_receivable_id:
                    return dataclasses.replace(x)

        return None

    def swap_boleto_status(self, boleto_id: int, expected: t.Tuple[str, str], target: t.Tuple[str, str]) -> bool:
        with self._lock:
            bol = self._get(self._boletos, boleto_id, 'boleto')

            if (bol.emission_status, bol.payment_status) != expected:
                return False

            bol.emission_status, bol.payment_status = target

            return True

    # Indexes.
    def add_index(self, index: Index) -> Index:
        with self._lock:
            if any(x.name == index.name for x in self._indexes.values()):
                raise ConflictError(f'index "{index.name}" already exists')

            return self._insert(self._indexes, index)

    def get_index(self, index_id: int) -> Index:
        with self._lock:
            return dataclasses.replace(self._get(self._indexes, index_id, 'index'))

    def add_index_update(self, update: IndexUpdate) -> IndexUpdate:
        with self._lock:
            self._get(self._indexes, update.index_id, 'index')

            if any(x.index_id == update.index_id and x.reference_month == update.reference_month for x in self._index_updates.values()):
                raise ConflictError(f'index #{update.index_id} already has an update for {update.reference_month:%Y-%m}')

            return self._insert(self._index_updates, update)

    def get_index_updates(self, index_id: int, begin: t.Optional[datetime.date] = None, end: t.Optional[datetime.date] = None) -> t.List[IndexUpdate]:
        with self._lock:
            lst = [
                dataclasses.replace(x) for x in self._index_updates.values()
                if x.index_id == index_id and (begin is None or x.reference_month >= begin) and (end is None or x.reference_month <= end)
            ]

        return sorted(lst, key=lambda x: x.reference_month)

# Schema of the relational backend.
#
# Credit amounts are integer cents. Every other decimal is stored as text, so it reads back exactly as written.
#
_SQLITE_SCHEMA = '''
CREATE TABLE IF NOT EXISTS credit_lines (
    id INTEGER PRIMARY KEY,
    company_id INTEGER NOT NULL,
    rate_180 TEXT NOT NULL,
    rate_360 TEXT NOT NULL,
    rate_720 TEXT NOT NULL,
    rate_long_term TEXT NOT NULL,
    fee_per_receivable TEXT NOT NULL,
    operation_days_limit INTEGER,
    limit_cents INTEGER NOT NULL CHECK (limit_cents >= 0),
    consumed_cents INTEGER NOT NULL DEFAULT 0 CHECK (consumed_cents >= 0),
    status TEXT NOT NULL CHECK (status IN ('Active', 'Inactive'))
);

CREATE UNIQUE INDEX IF NOT EXISTS credit_lines_single_active ON credit_lines (company_id) WHERE status = 'Active';

CREATE TABLE IF NOT EXISTS receivables (
    id INTEGER PRIMARY KEY,
    project_id INTEGER NOT NULL,
    amount TEXT NOT NULL,
    due_date TEXT NOT NULL,
    buyer_name TEXT NOT NULL DEFAULT '',
    buyer_tax_id TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS anticipation_requests (
    id INTEGER PRIMARY KEY,
    company_id INTEGER NOT NULL,
    project_id INTEGER NOT NULL,
    valor_total TEXT NOT NULL,
    valor_liquido TEXT NOT NULL,
    quantidade_recebiveis INTEGER NOT NULL,
    rate_180 TEXT NOT NULL,
    rate_360 TEXT NOT NULL,
    rate_720 TEXT NOT NULL,
    rate_long_term TEXT NOT NULL,
    fee_per_receivable TEXT NOT NULL,
    operation_days_limit INTEGER,
    status TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS anticipation_receivables (
    anticipation_id INTEGER NOT NULL REFERENCES anticipation_requests (id),
    receivable_id INTEGER NOT NULL REFERENCES receivables (id),
    position INTEGER NOT NULL,
    PRIMARY KEY (anticipation_id, receivable_id)
);

CREATE TABLE IF NOT EXISTS indexes (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS index_updates (
    id INTEGER PRIMARY KEY,
    index_id INTEGER NOT NULL REFERENCES indexes (id),
    reference_month TEXT NOT NULL,
    monthly_adjustment TEXT NOT NULL,
    UNIQUE (index_id, reference_month)
);

CREATE TABLE IF NOT EXISTS payment_plans (
    id INTEGER PRIMARY KEY,
    anticipation_id INTEGER NOT NULL UNIQUE REFERENCES anticipation_requests (id),
    project_id INTEGER NOT NULL,
    billing_day INTEGER NOT NULL,
    reserve_fund_cap TEXT NOT NULL,
    index_id INTEGER REFERENCES indexes (id),
    adjustment_base_date TEXT
);

CREATE TABLE IF NOT EXISTS installments (
    id INTEGER PRIMARY KEY,
    plan_id INTEGER NOT NULL REFERENCES payment_plans (id),
    installment_number INTEGER NOT NULL,
    due_date TEXT NOT NULL,
    pmt TEXT NOT NULL,
    receivables_total TEXT NOT NULL,
    outstanding_balance TEXT NOT NULL,
    reserve_fund TEXT NOT NULL,
    refund TEXT NOT NULL,
    UNIQUE (plan_id, installment_number)
);

CREATE TABLE IF NOT EXISTS pmt_receivables (
    id INTEGER PRIMARY KEY,
    installment_id INTEGER NOT NULL REFERENCES installments (id),
    receivable_id INTEGER NOT NULL REFERENCES receivables (id),
    UNIQUE (installment_id, receivable_id)
);

CREATE TABLE IF NOT EXISTS billing_receivables (
    id INTEGER PRIMARY KEY,
    installment_id INTEGER NOT NULL REFERENCES installments (id),
    receivable_id INTEGER NOT NULL UNIQUE REFERENCES receivables (id),
    new_due_date TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS boletos (
    id INTEGER PRIMARY KEY,
    billing_receivable_id INTEGER NOT NULL UNIQUE REFERENCES billing_receivables (id),
    face_value TEXT NOT NULL,
    due_date TEXT NOT NULL,
    index_id INTEGER REFERENCES indexes (id),
    adjustment_percentage TEXT,
    billed_value TEXT NOT NULL,
    emission_status TEXT NOT NULL,
    payment_status TEXT NOT NULL,
    external_id TEXT
);
'''

def _opt_dec(value: t.Optional[str]) -> t.Optional[decimal.Decimal]:
    return None if value is None else decimal.Decimal(value)

def _opt_str(value: t.Any) -> t.Optional[str]:
    return None if value is None else str(value)

def _opt_date(value: t.Optional[str]) -> t.Optional[datetime.date]:
    return None if value is None else datetime.date.fromisoformat(value)

def _opt_iso(value: t.Optional[datetime.date]) -> t.Optional[str]:
    return None if value is None else value.isoformat()

def _rates_from_row(row: sqlite3.Row) -> RateTable:
    return RateTable(
        rate_180=decimal.Decimal(row['rate_180']),
        rate_360=decimal.Decimal(row['rate_360']),
        rate_720=decimal.Decimal(row['rate_720']),
        rate_long_term=decimal.Decimal(row['rate_long_term']),
        fee_per_receivable=decimal.Decimal(row['fee_per_receivable']),
        operation_days_limit=row['operation_days_limit']
    )

def _rates_to_params(rates: RateTable) -> t.Tuple[t.Any, ...]:
    return (str(rates.rate_180), str(rates.rate_360), str(rates.rate_720), str(rates.rate_long_term), str(rates.fee_per_receivable), rates.operation_days_limit)

class SqliteBackend(StorageBackend):
    '''
    A relational backend on SQLite.

    One table per entity, with foreign keys. Invariants are constraints, not application checks:

      • a partial unique index keeps a single active credit line per company;

      • "billing_receivables.receivable_id" is unique, so a receivable backs at most one billing receivable;

      • a billing receivable has at most one boleto, an anticipation at most one plan, an index one update per month.

    Writes run inside "BEGIN IMMEDIATE" transactions. Credit consumption is the compare-and-swap statement described
    in the module header. A single connection is shared by the threads of a process, behind a lock; concurrent
    processes are serialized by SQLite itself.

        backend = SqliteBackend('antecipa.db')
    '''

    def __init__(self, path: str = ':memory:', timeout: float = 5.0) -> None:
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, timeout=timeout, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        self._conn.execute('PRAGMA foreign_keys = ON')
        self._conn.executescript(_SQLITE_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextlib.contextmanager
    def _transaction(self) -> t.Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()

            try:
                cur.execute('BEGIN IMMEDIATE')

            except sqlite3.OperationalError as exc:
                raise BackendError(f'could not start a transaction: {exc}') from exc

            try:
                yield cur

            except BaseException:
                if self._conn.in_transaction:
                    cur.execute('ROLLBACK')

                raise

            else:
                cur.execute('COMMIT')

    def _query(self, sql: str, params: t.Sequence[t.Any] = ()) -> t.List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()

            except sqlite3.OperationalError as exc:
                raise BackendError(str(exc)) from exc

    def _one(self, sql: str, params: t.Sequence[t.Any], name: str, key: int) -> sqlite3.Row:
        rows = self._query(sql, params)

        if not rows:
            raise NotFoundError(f'{name} #{key} not found')

        return rows[0]

    # Row converters.
    @staticmethod
    def _credit_line(row: sqlite3.Row) -> CreditLine:
        return CreditLine(
            company_id=row['company_id'],
            rates=_rates_from_row(row),
            credit_limit=_from_cents(row['limit_cents']),
            consumed_credit=_from_cents(row['consumed_cents']),
            status=row['status'],
            id=row['id']
        )

    @staticmethod
    def _receivable(row: sqlite3.Row) -> Receivable:
        return Receivable(
            project_id=row['project_id'],
            amount=decimal.Decimal(row['amount']),
            due_date=datetime.date.fromisoformat(row['due_date']),
            buyer_name=row['buyer_name'],
            buyer_tax_id=row['buyer_tax_id'],
            status=row['status'],
            id=row['id']
        )

    def _anticipation(self, row: sqlite3.Row) -> AnticipationRequest:
        ids = self._query('SELECT receivable_id FROM anticipation_receivables WHERE anticipation_id = ? ORDER BY position', (row['id'],))

        return AnticipationRequest(
            company_id=row['company_id'],
            project_id=row['project_id'],
            valor_total=decimal.Decimal(row['valor_total']),
            valor_liquido=decimal.Decimal(row['valor_liquido']),
            quantidade_recebiveis=row['quantidade_recebiveis'],
            rates=_rates_from_row(row),
            receivable_ids=tuple(x['receivable_id'] for x in ids),
            status=row['status'],
            id=row['id']
        )

    @staticmethod
    def _plan(row: sqlite3.Row) -> PaymentPlan:
        return PaymentPlan(
            anticipation_id=row['anticipation_id'],
            project_id=row['project_id'],
            billing_day=row['billing_day'],
            reserve_fund_cap=decimal.Decimal(row['reserve_fund_cap']),
            index_id=row['index_id'],
            adjustment_base_date=_opt_date(row['adjustment_base_date']),
            id=row['id']
        )

    @staticmethod
    def _installment(row: sqlite3.Row) -> Installment:
        return Installment(
            plan_id=row['plan_id'],
            installment_number=row['installment_number'],
            due_date=datetime.date.fromisoformat(row['due_date']),
            pmt=decimal.Decimal(row['pmt']),
            receivables_total=decimal.Decimal(row['receivables_total']),
            outstanding_balance=decimal.Decimal(row['outstanding_balance']),
            reserve_fund=decimal.Decimal(row['reserve_fund']),
            refund=decimal.Decimal(row['refund']),
            id=row['id']
        )

    @staticmethod
    def _billing_receivable(row: sqlite3.Row) -> BillingReceivable:
        return BillingReceivable(row['installment_id'], row['receivable_id'], datetime.date.fromisoformat(row['new_due_date']), id=row['id'])

    @staticmethod
    def _boleto(row: sqlite3.Row) -> Boleto:
        return Boleto(
            billing_receivable_id=row['billing_receivable_id'],
            face_value=decimal.Decimal(row['face_value']),
            due_date=datetime.date.fromisoformat(row['due_date']),
            index_id=row['index_id'],
            adjustment_percentage=_opt_dec(row['adjustment_percentage']),
            billed_value=decimal.Decimal(row['billed_value']),
            emission_status=row['emission_status'],
            payment_status=row['payment_status'],
            external_id=row['external_id'],
            id=row['id']
        )

    @staticmethod
    def _index_update(row: sqlite3.Row) -> IndexUpdate:
        return IndexUpdate(row['index_id'], datetime.date.fromisoformat(row['reference_month']), decimal.Decimal(row['monthly_adjustment']), id=row['id'])

    # Credit lines.
    def add_credit_line(self, line: CreditLine) -> CreditLine:
        sql = '''
            INSERT INTO credit_lines (company_id, rate_180, rate_360, rate_720, rate_long_term, fee_per_receivable, operation_days_limit, limit_cents, consumed_cents, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        '''

        try:
            with self._transaction() as cur:
                cur.execute(sql, (line.company_id, *_rates_to_params(line.rates), _as_cents(line.credit_limit), _as_cents(line.consumed_credit), line.status))

                key = cur.lastrowid

        except sqlite3.IntegrityError as exc:
            raise ConflictError(f'company #{line.company_id} already has an active credit line') from exc

        return self.get_credit_line(key)

    def get_credit_line(self, line_id: int) -> CreditLine:
        return self._credit_line(self._one('SELECT * FROM credit_lines WHERE id = ?', (line_id,), 'credit line', line_id))

    def get_credit_lines(self, company_id: int) -> t.List[CreditLine]:
        return [self._credit_line(x) for x in self._query('SELECT * FROM credit_lines WHERE company_id = ? ORDER BY id', (company_id,))]

    def update_credit_line_terms(self, line_id: int, rates: RateTable, credit_limit: decimal.Decimal) -> CreditLine:
        sql = '''
            UPDATE credit_lines
               SET rate_180 = ?, rate_360 = ?, rate_720 = ?, rate_long_term = ?, fee_per_receivable = ?, operation_days_limit = ?, limit_cents = ?
             WHERE id = ?
        '''

        with self._transaction() as cur:
            if not cur.execute(sql, (*_rates_to_params(rates), _as_cents(credit_limit), line_id)).rowcount:
                raise NotFoundError(f'credit line #{line_id} not found')

        return self.get_credit_line(line_id)

    def activate_credit_line(self, company_id: int, line_id: int) -> CreditLine:
        with self._transaction() as cur:
            cur.execute("UPDATE credit_lines SET status = 'Inactive' WHERE company_id = ? AND id != ? AND status = 'Active'", (company_id, line_id))

            if not cur.execute("UPDATE credit_lines SET status = 'Active' WHERE id = ? AND company_id = ?", (line_id, company_id)).rowcount:
                raise NotFoundError(f'credit line #{line_id} not found for company #{company_id}')

        return self.get_credit_line(line_id)

    def _consume(self, cur: sqlite3.Cursor, line_id: int, amount: decimal.Decimal) -> bool:
        sql = '''
            UPDATE credit_lines SET consumed_cents = consumed_cents + :amt
             WHERE id = :id AND status = 'Active' AND consumed_cents + :amt <= limit_cents
        '''

        return cur.execute(sql, {'amt': _as_cents(amount), 'id': line_id}).rowcount == 1

    def try_consume_credit(self, line_id: int, amount: decimal.Decimal) -> bool:
        self.get_credit_line(line_id)

        with self._transaction() as cur:
            return self._consume(cur, line_id, amount)

    def release_credit(self, line_id: int, amount: decimal.Decimal) -> CreditLine:
        with self._transaction() as cur:
            if not cur.execute('UPDATE credit_lines SET consumed_cents = MAX(0, consumed_cents - ?) WHERE id = ?', (_as_cents(amount), line_id)).rowcount:
                raise NotFoundError(f'credit line #{line_id} not found')

        return self.get_credit_line(line_id)

    # Receivables.
    def add_receivable(self, receivable: Receivable) -> Receivable:
        sql = 'INSERT INTO receivables (project_id, amount, due_date, buyer_name, buyer_tax_id, status) VALUES (?, ?, ?, ?, ?, ?)'

        with self._transaction() as cur:
            cur.execute(sql, (receivable.project_id, str(receivable.amount), receivable.due_date.isoformat(), receivable.buyer_name, receivable.buyer_tax_id, receivable.status))

            key = cur.lastrowid

        return self.get_receivable(key)

    def get_receivable(self, receivable_id: int) -> Receivable:
        return self._receivable(self._one('SELECT * FROM receivables WHERE id = ?', (receivable_id,), 'receivable', receivable_id))

    def get_receivables(self, project_id: t.Optional[int] = None, status: t.Optional[str] = None, due_from: t.Optional[datetime.date] = None, due_to: t.Optional[datetime.date] = None) -> t.List[Receivable]:
        cond: t.List[str] = []
        args: t.List[t.Any] = []

        for clause, value in (('project_id = ?', project_id), ('status = ?', status), ('due_date >= ?', _opt_iso(due_from)), ('due_date <= ?', _opt_iso(due_to))):
            if value is not None:
                cond.append(clause)
                args.append(value)

        sql = 'SELECT * FROM receivables' + (' WHERE ' + ' AND '.join(cond) if cond else '') + ' ORDER BY due_date, id'

        return [self._receivable(x) for x in self._query(sql, args)]

    # Anticipations.
    def add_anticipation(self, anticipation: AnticipationRequest) -> AnticipationRequest:
        sql = '''
            INSERT INTO anticipation_requests (company_id, project_id, valor_total, valor_liquido, quantidade_recebiveis, rate_180, rate_360, rate_720, rate_long_term, fee_per_receivable, operation_days_limit, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        '''

        ant = anticipation

        with self._transaction() as cur:
            for rid in ant.receivable_ids:
                if not cur.execute("UPDATE receivables SET status = 'anticipated' WHERE id = ? AND status = 'eligible_for_anticipation'", (rid,)).rowcount:
                    raise ConflictError(f'receivable #{rid} is no longer eligible for anticipation', receivable_id=rid)

            cur.execute(sql, (ant.company_id, ant.project_id, str(ant.valor_total), str(ant.valor_liquido), ant.quantidade_recebiveis, *_rates_to_params(ant.rates), ant.status))

            key = cur.lastrowid

            cur.executemany(
                'INSERT INTO anticipation_receivables (anticipation_id, receivable_id, position) VALUES (?, ?, ?)',
                [(key, rid, i) for i, rid in enumerate(ant.receivable_ids)]
            )

        return self.get_anticipation(key)

    def get_anticipation(self, anticipation_id: int) -> AnticipationRequest:
        return self._anticipation(self._one('SELECT * FROM anticipation_requests WHERE id = ?', (anticipation_id,), 'anticipation', anticipation_id))

    def get_anticipations(self, company_id: t.Optional[int] = None, status: t.Optional[str] = None) -> t.List[AnticipationRequest]:
        sql = 'SELECT * FROM anticipation_requests WHERE (? IS NULL OR company_id = ?) AND (? IS NULL OR status = ?) ORDER BY id'

        return [self._anticipation(x) for x in self._query(sql, (company_id, company_id, status, status))]

    def approve_anticipation(self, anticipation_id: int, line_id: int, amount: decimal.Decimal) -> bool:
        with self._transaction() as cur:
            row = cur.execute('SELECT status FROM anticipation_requests WHERE id = ?', (anticipation_id,)).fetchone()

            if row is None:
                raise NotFoundError(f'anticipation #{anticipation_id} not found')

            elif row['status'] != 'Requested':
                raise InvalidTransition(row['status'], 'Approved')

            elif not self._consume(cur, line_id, amount):
                return False

            cur.execute("UPDATE anticipation_requests SET status = 'Approved' WHERE id = ? AND status = 'Requested'", (anticipation_id,))

        return True

    def set_anticipation_status(self, anticipation_id: int, current: str, target: str) -> bool:
        self.get_anticipation(anticipation_id)

        with self._transaction() as cur:
            return cur.execute('UPDATE anticipation_requests SET status = ? WHERE id = ? AND status = ?', (target, anticipation_id, current)).rowcount == 1

    # Payment plans.
    def add_payment_plan(self, plan: PaymentPlan) -> PaymentPlan:
        sql = 'INSERT INTO payment_plans (anticipation_id, project_id, billing_day, reserve_fund_cap, index_id, adjustment_base_date) VALUES (?, ?, ?, ?, ?, ?)'

        self.get_anticipation(plan.anticipation_id)

        try:
            with self._transaction() as cur:
                cur.execute(sql, (plan.anticipation_id, plan.project_id, plan.billing_day, str(plan.reserve_fund_cap), plan.index_id, _opt_iso(plan.adjustment_base_date)))

                key = cur.lastrowid

        except sqlite3.IntegrityError as exc:
            raise ConflictError(f'anticipation #{plan.anticipation_id} already has a payment plan') from exc

        return self.get_payment_plan(key)

    def get_payment_plan(self, plan_id: int) -> PaymentPlan:
        return self._plan(self._one('SELECT * FROM payment_plans WHERE id = ?', (plan_id,), 'payment plan', plan_id))

    def add_installment(self, installment: Installment) -> Installment:
        sql = '''
            INSERT INTO installments (plan_id, installment_number, due_date, pmt, receivables_total, outstanding_balance, reserve_fund, refund)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        '''

        ins = installment

        self.get_payment_plan(ins.plan_id)

        try:
            with self._transaction() as cur:
                cur.execute(sql, (ins.plan_id, ins.installment_number, ins.due_date.isoformat(), str(ins.pmt), str(ins.receivables_total), str(ins.outstanding_balance), str(ins.reserve_fund), str(ins.refund)))

                key = cur.lastrowid

        except sqlite3.IntegrityError as exc:
            raise ConflictError(f'payment plan #{ins.plan_id} already has installment number {ins.installment_number}') from exc

        return self.get_installment(key)

    def get_installment(self, installment_id: int) -> Installment:
        return self._installment(self._one('SELECT * FROM installments WHERE id = ?', (installment_id,), 'installment', installment_id))

    def get_installments(self, plan_id: int) -> t.List[Installment]:
        return [self._installment(x) for x in self._query('SELECT * FROM installments WHERE plan_id = ? ORDER BY installment_number', (plan_id,))]

    def update_installment(self, installment: Installment) -> Installment:
        sql = 'UPDATE installments SET receivables_total = ?, outstanding_balance = ?, reserve_fund = ?, refund = ? WHERE id = ?'

        ins = installment

        with self._transaction() as cur:
            if not cur.execute(sql, (str(ins.receivables_total), str(ins.outstanding_balance), str(ins.reserve_fund), str(ins.refund), ins.id)).rowcount:
                raise NotFoundError(f'installment #{ins.id} not found')

        return self.get_installment(ins.id)

    def add_pmt_receivable(self, link: PmtReceivable) -> PmtReceivable:
        self.get_installment(link.installment_id)
        self.get_receivable(link.receivable_id)

        try:
            with self._transaction() as cur:
                cur.execute('INSERT INTO pmt_receivables (installment_id, receivable_id) VALUES (?, ?)', (link.installment_id, link.receivable_id))

                key = cur.lastrowid

        except sqlite3.IntegrityError as exc:
            raise ConflictError(f'receivable #{link.receivable_id} is already a PMT source of installment #{link.installment_id}', link.receivable_id, link.installment_id) from exc

        return PmtReceivable(link.installment_id, link.receivable_id, id=key)

    def get_pmt_receivables(self, installment_id: t.Optional[int] = None, receivable_id: t.Optional[int] = None) -> t.List[PmtReceivable]:
        sql = 'SELECT * FROM pmt_receivables WHERE (? IS NULL OR installment_id = ?) AND (? IS NULL OR receivable_id = ?) ORDER BY id'

        return [PmtReceivable(x['installment_id'], x['receivable_id'], id=x['id']) for x in self._query(sql, (installment_id, installment_id, receivable_id, receivable_id))]

    def add_billing_receivable(self, link: BillingReceivable) -> BillingReceivable:
        self.get_installment(link.installment_id)
        self.get_receivable(link.receivable_id)

        try:
            with self._transaction() as cur:
                cur.execute('INSERT INTO billing_receivables (installment_id, receivable_id, new_due_date) VALUES (?, ?, ?)', (link.installment_id, link.receivable_id, link.new_due_date.isoformat()))

                key = cur.lastrowid

        except sqlite3.IntegrityError as exc:
            other = self.get_billing_receivables(receivable_id=link.receivable_id)
            where = other[0].installment_id if other else None

            raise ConflictError(f'receivable #{link.receivable_id} is already attached to installment #{where}', link.receivable_id, where) from exc

        return self.get_billing_receivable(key)

    def get_billing_receivable(self, billing_receivable_id: int) -> BillingReceivable:
        return self._billing_receivable(self._one('SELECT * FROM billing_receivables WHERE id = ?', (billing_receivable_id,), 'billing receivable', billing_receivable_id))

    def get_billing_receivables(self, installment_id: t.Optional[int] = None, receivable_id: t.Optional[int] = None) -> t.List[BillingReceivable]:
        sql = 'SELECT * FROM billing_receivables WHERE (? IS NULL OR installment_id = ?) AND (? IS NULL OR receivable_id = ?) ORDER BY id'

        return [self._billing_receivable(x) for x in self._query(sql, (installment_id, installment_id, receivable_id, receivable_id))]

    def delete_billing_receivable(self, billing_receivable_id: int) -> BillingReceivable:
        link = self.get_billing_receivable(billing_receivable_id)

        with self._transaction() as cur:
            cur.execute('DELETE FROM boletos WHERE billing_receivable_id = ?', (billing_receivable_id,))

            if not cur.execute('DELETE FROM billing_receivables WHERE id = ?', (billing_receivable_id,)).rowcount:
                raise NotFoundError(f'billing receivable #{billing_receivable_id} not found')

        return link

    # Boletos.
    def add_boleto(self, boleto: Boleto) -> Boleto:
        sql = '''
            INSERT INTO boletos (billing_receivable_id, face_value, due_date, index_id, adjustment_percentage, billed_value, emission_status, payment_status, external_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        '''

        bol = boleto

        self.get_billing_receivable(bol.billing_receivable_id)

        try:
            with self._transaction() as cur:
                cur.execute(sql, (bol.billing_receivable_id, str(bol.face_value), bol.due_date.isoformat(), bol.index_id, _opt_str(bol.adjustment_percentage), str(bol.billed_value), bol.emission_status, bol.payment_status, bol.external_id))

                key = cur.lastrowid

        except sqlite3.IntegrityError as exc:
            raise ConflictError(f'billing receivable #{bol.billing_receivable_id} already has a boleto') from exc

        return self.get_boleto(key)

    def get_boleto(self, boleto_id: int) -> Boleto:
        return self._boleto(self._one('SELECT * FROM boletos WHERE id = ?', (boleto_id,), 'boleto', boleto_id))

    def get_boleto_for(self, billing_receivable_id: int) -> t.Optional[Boleto]:
        rows = self._query('SELECT * FROM boletos WHERE billing_receivable_id = ?', (billing_receivable_id,))

        return self._boleto(rows[0]) if rows else None

    def swap_boleto_status(self, boleto_id: int, expected: t.Tuple[str, str], target: t.Tuple[str, str]) -> bool:
        sql = 'UPDATE boletos SET emission_status = ?, payment_status = ? WHERE id = ? AND emission_status = ? AND payment_status = ?'

        self.get_boleto(boleto_id)

        with self._transaction() as cur:
            return cur.execute(sql, (*target, boleto_id, *expected)).rowcount == 1

    # Indexes.
    def add_index(self, index: Index) -> Index:
        try:
            with self._transaction() as cur:
                cur.execute('INSERT INTO indexes (name, description) VALUES (?, ?)', (index.name, index.description))

                key = cur.lastrowid

        except sqlite3.IntegrityError as exc:
            raise ConflictError(f'index "{index.name}" already exists') from exc

        return self.get_index(key)

    def get_index(self, index_id: int) -> Index:
        row = self._one('SELECT * FROM indexes WHERE id = ?', (index_id,), 'index', index_id)

        return Index(row['name'], row['description'], id=row['id'])

    def add_index_update(self, update: IndexUpdate) -> IndexUpdate:
        self.get_index(update.index_id)

        try:
            with self._transaction() as cur:
                cur.execute('INSERT INTO index_updates (index_id, reference_month, monthly_adjustment) VALUES (?, ?, ?)', (update.index_id, update.reference_month.isoformat(), str(update.monthly_adjustment)))

                key = cur.lastrowid

        except sqlite3.IntegrityError as exc:
            raise ConflictError(f'index #{update.index_id} already has an update for {update.reference_month:%Y-%m}') from exc

        return IndexUpdate(update.index_id, update.reference_month, update.monthly_adjustment, id=key)

    def get_index_updates(self, index_id: int, begin: t.Optional[datetime.date] = None, end: t.Optional[datetime.date] = None) -> t.List[IndexUpdate]:
        sql = '''
            SELECT * FROM index_updates
             WHERE index_id = ? AND (? IS NULL OR reference_month >= ?) AND (? IS NULL OR reference_month <= ?)
             ORDER BY reference_month
        '''

        b, e = _opt_iso(begin), _opt_iso(end)

        return [self._index_update(x) for x in self._query(sql, (index_id, b, b, e, e))]
# }}}

# Public API. Credit ledger. {{{
class CreditLedger:
    '''
    The per-company credit ledger.

    Gates approvals on available credit, and consumes it atomically. The capacity check offered by "check_capacity"
    is advisory; "consume" performs its own check, in the same atomic step as the write.
    '''

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend

    @typeguard.typechecked
    def get_active_line(self, company_id: int) -> CreditLine:
        for line in self._backend.get_credit_lines(company_id):
            if line.status == 'Active':
                return line

        raise NotFoundError(f'company #{company_id} has no active credit line')

    @typeguard.typechecked
    def check_capacity(self, company_id: int, amount: decimal.Decimal) -> CapacityCheck:
        '''
        Checks whether the company's active line can afford an amount.

        Never raises for insufficiency. The returned CapacityCheck has "ok" false, and an "error" built from both
        operands, when the amount exceeds the available credit.
        '''

        line = self.get_active_line(company_id)

        return CapacityCheck(
            ok=amount <= line.available_credit,
            available=line.available_credit,
            requested=amount,
            company_id=company_id,
            line_id=line.id
        )

    @typeguard.typechecked
    def consume(self, company_id: int, amount: decimal.Decimal) -> CreditLine:
        '''
        Consumes credit from the company's active line. Raises InsufficientCredit if it can't be afforded.

        The amount must be positive, in whole cents.
        '''

        _check_ledger_amount(amount)

        line = self.get_active_line(company_id)

        if not self._backend.try_consume_credit(line.id, amount):
            line = self._backend.get_credit_line(line.id)

            _LOG.warning(f'credit line #{line.id} of company #{company_id} refused {amount}, {line.available_credit} available')

            raise InsufficientCredit(line.available_credit, amount, company_id)

        _LOG.info(f'consumed {amount} from credit line #{line.id} of company #{company_id}')

        return self._backend.get_credit_line(line.id)

    @typeguard.typechecked
    def release(self, company_id: int, amount: decimal.Decimal) -> CreditLine:
        '''Gives credit back to the company's active line. Consumed credit never goes below zero.'''

        _check_ledger_amount(amount)

        line = self.get_active_line(company_id)

        if amount > line.consumed_credit:
            _LOG.warning(f'releasing {amount} from credit line #{line.id}, which only has {line.consumed_credit} consumed')

        line = self._backend.release_credit(line.id, amount)

        _LOG.info(f'released {amount} to credit line #{line.id} of company #{company_id}')

        return line

    @typeguard.typechecked
    def create_line(self, company_id: int, rates: RateTable, credit_limit: decimal.Decimal, activate: bool = True) -> CreditLine:
        '''Creates a credit line, and activates it unless told otherwise.'''

        if credit_limit < 0:
            raise ValidationError(f'"credit_limit" must not be negative, got {credit_limit}')

        _as_cents(credit_limit)

        line = self._backend.add_credit_line(CreditLine(company_id, rates, credit_limit))

        _LOG.info(f'created credit line #{line.id} for company #{company_id}, limit {credit_limit}')

        return self.activate(company_id, line.id) if activate else line

    @typeguard.typechecked
    def activate(self, company_id: int, line_id: int) -> CreditLine:
        '''Activates a line. Any other active line of the company is deactivated in the same transaction.'''

        line = self._backend.activate_credit_line(company_id, line_id)

        _LOG.info(f'credit line #{line_id} is now the active line of company #{company_id}')

        return line

    @typeguard.typechecked
    def edit_terms(self, line_id: int, rates: t.Optional[RateTable] = None, credit_limit: t.Optional[decimal.Decimal] = None) -> CreditLine:
        line = self._backend.get_credit_line(line_id)
        lim = line.credit_limit if credit_limit is None else credit_limit

        if lim < 0:
            raise ValidationError(f'"credit_limit" must not be negative, got {lim}')

        _as_cents(lim)

        if lim < line.consumed_credit:
            _LOG.warning(f'credit line #{line_id} limit, {lim}, is below its consumed credit, {line.consumed_credit}')

        return self._backend.update_credit_line_terms(line_id, rates or line.rates, lim)
# }}}

# Public API. Anticipation life cycle. {{{
class AnticipationLifecycle:
    '''
    Anticipation requests, from submission to completion.

    States and transitions:

        Requested ──> Approved ──> Completed
            │             │
            └─────────────┴──────> Rejected

    Rejected and Completed are terminal. Approval consumes the request's "valor_total" from the company's active
    credit line, atomically with the status change.
    '''

    def __init__(self, backend: StorageBackend, ledger: CreditLedger) -> None:
        self._backend = backend
        self._ledger = ledger

    def _load_receivables(self, receivable_ids: t.Sequence[int]) -> t.List[Receivable]:
        if not receivable_ids:
            raise ValidationError('at least one receivable is required')

        elif len(set(receivable_ids)) != len(receivable_ids):
            raise ValidationError('receivable ids must be distinct')

        return [self._backend.get_receivable(x) for x in receivable_ids]

    @typeguard.typechecked
    def quote(self, company_id: int, receivable_ids: t.Sequence[int], eval_date: t.Optional[datetime.date] = None) -> PricedOffer:
        '''Prices receivables with the company's active rates. Stores nothing.'''

        line = self._ledger.get_active_line(company_id)

        return price_anticipation(self._load_receivables(receivable_ids), line.rates, eval_date)

    @typeguard.typechecked
    def submit(self, company_id: int, project_id: int, receivable_ids: t.Sequence[int], eval_date: t.Optional[datetime.date] = None) -> AnticipationRequest:
        '''
        Submits an anticipation request.

        The receivables must belong to the project and be eligible for anticipation. They are priced with the
        company's active rates, which the request keeps as a snapshot, and become "anticipated".
        '''

        recs = self._load_receivables(receivable_ids)

        for x in recs:
            if x.project_id != project_id:
                raise ValidationError(f'receivable #{x.id} does not belong to project #{project_id}')

            elif x.status != 'eligible_for_anticipation':
                raise ValidationError(f'receivable #{x.id} is "{x.status}", not eligible for anticipation')

        line = self._ledger.get_active_line(company_id)
        offer = price_anticipation(recs, line.rates, eval_date)

        _as_cents(offer.valor_total)

        ant = AnticipationRequest(
            company_id=company_id,
            project_id=project_id,
            valor_total=offer.valor_total,
            valor_liquido=offer.valor_liquido,
            quantidade_recebiveis=offer.quantidade,
            rates=line.rates,
            receivable_ids=tuple(x.id for x in recs)
        )

        ant = self._backend.add_anticipation(ant)

        _LOG.info(f'anticipation #{ant.id} requested by company #{company_id}: {ant.quantidade_recebiveis} receivables, total {ant.valor_total}, net {_Q(ant.valor_liquido)}')

        return ant

    @typeguard.typechecked
    def get(self, anticipation_id: int) -> AnticipationRequest:
        return self._backend.get_anticipation(anticipation_id)

    @typeguard.typechecked
    def transition(self, anticipation_id: int, target: _ANTICIPATION_STATUS) -> TransitionOutcome:
        '''
        Moves a request to a new status.

        Raises InvalidTransition for transitions outside the state machine, including any from a terminal state.

        Approval checks the company's credit first. Insufficient credit is not an exception here: the outcome comes
        back with the request untouched and an InsufficientCredit in its "error" field, carrying the available and
        the requested amounts. The credit consumption and the status change happen together, or not at all.

        Rejecting or completing an approved request keeps its credit consumed.
        '''

        ant = self._backend.get_anticipation(anticipation_id)

        if target not in _TRANSITIONS.get(ant.status, ()):
            raise InvalidTransition(ant.status, target)

        if target == 'Approved':
            return self._approve(ant)

        if not self._backend.set_anticipation_status(ant.id, ant.status, target):
            raise InvalidTransition(self._backend.get_anticipation(ant.id).status, target)

        _LOG.info(f'anticipation #{ant.id} moved from {ant.status} to {target}')

        return TransitionOutcome(self._backend.get_anticipation(ant.id))

    def _approve(self, ant: AnticipationRequest) -> TransitionOutcome:
        chk = self._ledger.check_capacity(ant.company_id, ant.valor_total)

        if not chk.ok:
            _LOG.warning(f'anticipation #{ant.id} not approved: requested {chk.requested}, available {chk.available}')

            return TransitionOutcome(ant, chk.error)

        # The check above is advisory. This one is the compare-and-swap.
        if not self._backend.approve_anticipation(ant.id, chk.line_id, ant.valor_total):
            line = self._backend.get_credit_line(chk.line_id)

            _LOG.warning(f'anticipation #{ant.id} not approved: credit line #{line.id} changed, {line.available_credit} available')

            return TransitionOutcome(ant, InsufficientCredit(line.available_credit, ant.valor_total, ant.company_id))

        _LOG.info(f'anticipation #{ant.id} approved, {ant.valor_total} consumed from credit line #{chk.line_id}')

        return TransitionOutcome(self._backend.get_anticipation(ant.id))
# }}}

# Public API. Installment reconciliation. {{{
class InstallmentReconciler:
    '''
    Payment plans, installments, and the receivables behind them.

    Schedules are built elsewhere and imported with "add_installment". From then on, this class tracks which
    receivables collect each installment and keeps the derived balances right.
    '''

    def __init__(self, backend: StorageBackend, settings: Settings) -> None:
        self._backend = backend
        self._settings = settings

    @typeguard.typechecked
    def create_plan(
        self,
        anticipation_id: int,
        billing_day: int,
        reserve_fund_cap: decimal.Decimal,
        index_id: t.Optional[int] = None,
        adjustment_base_date: t.Optional[datetime.date] = None
    ) -> PaymentPlan:
        '''Creates the payment plan of an approved anticipation. One plan per anticipation.'''

        ant = self._backend.get_anticipation(anticipation_id)

        if ant.status != 'Approved':
            raise ValidationError(f'anticipation #{anticipation_id} is {ant.status}, a payment plan requires an approved anticipation')

        elif not 1 <= billing_day <= 31:
            raise ValidationError(f'"billing_day" must be between 1 and 31, got {billing_day}')

        elif reserve_fund_cap < 0:
            raise ValidationError(f'"reserve_fund_cap" must not be negative, got {reserve_fund_cap}')

        elif (index_id is None) != (adjustment_base_date is None):
            raise ValidationError('"index_id" and "adjustment_base_date" must be given together')

        if index_id is not None:
            self._backend.get_index(index_id)

        plan = self._backend.add_payment_plan(PaymentPlan(ant.id, ant.project_id, billing_day, reserve_fund_cap, index_id, adjustment_base_date))

        _LOG.info(f'payment plan #{plan.id} created for anticipation #{ant.id}')

        return plan

    @typeguard.typechecked
    def add_installment(
        self,
        plan_id: int,
        installment_number: int,
        due_date: datetime.date,
        pmt: decimal.Decimal,
        outstanding_balance: decimal.Decimal = _0,
        reserve_fund: decimal.Decimal = _0,
        refund: decimal.Decimal = _0,
        pmt_receivable_ids: t.Sequence[int] = ()
    ) -> Installment:
        '''
        Imports an installment of an externally built schedule, with the receivables that originated it.

        PMT receivables must be receivables of the plan's anticipation.
        '''

        plan = self._backend.get_payment_plan(plan_id)
        ant = self._backend.get_anticipation(plan.anticipation_id)

        if installment_number < 0:
            raise ValidationError(f'"installment_number" must not be negative, got {installment_number}')

        elif pmt < 0:
            raise ValidationError(f'"pmt" must not be negative, got {pmt}')

        for rid in pmt_receivable_ids:
            if rid not in ant.receivable_ids:
                raise ValidationError(f'receivable #{rid} is not part of anticipation #{ant.id}')

        ins = self._backend.add_installment(Installment(plan.id, installment_number, due_date, pmt, _0, outstanding_balance, reserve_fund, refund))

        for rid in pmt_receivable_ids:
            self._backend.add_pmt_receivable(PmtReceivable(ins.id, rid))

        return ins

    @typeguard.typechecked
    def get_installments(self, plan_id: int) -> t.List[Installment]:
        return self._backend.get_installments(plan_id)

    @typeguard.typechecked
    def list_sources(self, installment_id: int) -> InstallmentSources:
        '''Returns the PMT receivables and the billing receivables of an installment.'''

        ins = self._backend.get_installment(installment_id)
        pmt = [self._backend.get_receivable(x.receivable_id) for x in self._backend.get_pmt_receivables(installment_id=ins.id)]
        bil = [BillingSource(x, self._backend.get_receivable(x.receivable_id)) for x in self._backend.get_billing_receivables(installment_id=ins.id)]

        return InstallmentSources(ins, pmt, bil)

    @typeguard.typechecked
    def list_eligible_billing_candidates(self, plan_id: int, installment_id: int) -> t.List[Receivable]:
        '''
        Lists receivables that may be attached to an installment as billing receivables.

        Candidates are anticipated receivables of the plan's project, due within the installment's month (see
        "Settings.candidates_within_installment_month"), not attached to any installment yet. PMT sources are left
        out, unless "Settings.allow_pmt_source_as_billing" is set.
        '''

        plan = self._backend.get_payment_plan(plan_id)
        ins = self._backend.get_installment(installment_id)

        if ins.plan_id != plan.id:
            raise ValidationError(f'installment #{ins.id} does not belong to payment plan #{plan.id}')

        kwa: t.Dict[str, t.Any] = {'project_id': plan.project_id, 'status': 'anticipated'}

        if self._settings.candidates_within_installment_month:
            kwa['due_from'] = _month_start(ins.due_date)
            kwa['due_to'] = _month_end(ins.due_date)

        skip = {x.receivable_id for x in self._backend.get_billing_receivables()}

        if not self._settings.allow_pmt_source_as_billing:
            skip |= {x.receivable_id for x in self._backend.get_pmt_receivables()}

        return [x for x in self._backend.get_receivables(**kwa) if x.id not in skip]

    @typeguard.typechecked
    def attach_billing_receivables(self, installment_id: int, receivable_ids: t.Sequence[int]) -> AttachResult:
        '''
        Attaches receivables to an installment as billing receivables, due on the installment's due date.

        Items fail one by one. The result lists what was created and what was rejected, each rejection with its error.
        A receivable already attached elsewhere is rejected with a ConflictError; the existing attachment stays. The
        uniqueness check happens at write time.
        '''

        ins = self._backend.get_installment(installment_id)
        plan = self._backend.get_payment_plan(ins.plan_id)
        out = AttachResult(ins.id)

        if not receivable_ids:
            raise ValidationError('at least one receivable is required')

        for rid in receivable_ids:
            try:
                rec = self._backend.get_receivable(rid)

                if rec.project_id != plan.project_id:
                    raise ValidationError(f'receivable #{rid} does not belong to project #{plan.project_id}')

                elif not self._settings.allow_pmt_source_as_billing and self._backend.get_pmt_receivables(receivable_id=rid):
                    raise ValidationError(f'receivable #{rid} is a PMT source and can not be attached as a billing receivable')

                out.created.append(self._backend.add_billing_receivable(BillingReceivable(ins.id, rid, ins.due_date)))

            except (NotFoundError, ValidationError, ConflictError) as exc:
                _LOG.warning(f'receivable #{rid} not attached to installment #{ins.id}: {exc}')

                out.rejected.append(RejectedItem(rid, exc))

        if out.created:
            _LOG.info(f'{len(out.created)} billing receivables attached to installment #{ins.id}')

            self.recalculate_plan(plan.id)

        return out

    # Short name.
    attach_billing = attach_billing_receivables

    @typeguard.typechecked
    def detach_billing_receivable(self, billing_receivable_id: int) -> BillingReceivable:
        '''Detaches a billing receivable, deleting its boleto. The receivable keeps its status.'''

        link = self._backend.delete_billing_receivable(billing_receivable_id)
        ins = self._backend.get_installment(link.installment_id)

        _LOG.info(f'billing receivable #{link.id}, receivable #{link.receivable_id}, detached from installment #{ins.id}')

        self.recalculate_plan(ins.plan_id)

        return link

    @typeguard.typechecked
    def reconciliation_summary(self, installment_id: int, receivable_ids: t.Optional[t.Sequence[int]] = None) -> ReconciliationSummary:
        '''
        Compares the PMT of an installment with a selection of receivables.

        Without a selection, the installment's current billing receivables are used.
        '''

        ins = self._backend.get_installment(installment_id)

        if receivable_ids is None:
            receivable_ids = [x.receivable_id for x in self._backend.get_billing_receivables(installment_id=ins.id)]

        tot = sum((self._backend.get_receivable(x).amount for x in receivable_ids), _0)

        return ReconciliationSummary(ins.id, ins.pmt, tot, ins.pmt - tot, len(receivable_ids))

    @typeguard.typechecked
    def recalculate_plan(self, plan_id: int) -> t.List[Installment]:
        '''
        Recalculates the derived balances of every installment of a plan, in order.

        For each installment, with V the anticipation's total value:

          received = Σ amounts of its billing receivables
          outstanding = V - pmt, on installment zero; max(0, previous outstanding - pmt) otherwise
          reserve = (received - pmt), on installment zero; previous reserve + (received - pmt) otherwise

        A reserve above the plan's cap is trimmed to it, and the excess becomes the installment's refund.
        '''

        plan = self._backend.get_payment_plan(plan_id)
        ant = self._backend.get_anticipation(plan.anticipation_id)
        bal = ant.valor_total
        res = _0
        out = []

        for ins in self._backend.get_installments(plan.id):
            rcv = sum((self._backend.get_receivable(x.receivable_id).amount for x in self._backend.get_billing_receivables(installment_id=ins.id)), _0)
            ctb = rcv - ins.pmt
            bal = ant.valor_total - ins.pmt if ins.installment_number == 0 else max(_0, bal - ins.pmt)
            res = ctb if ins.installment_number == 0 else res + ctb
            ref = _0

            if res > plan.reserve_fund_cap:
                ref = res - plan.reserve_fund_cap
                res = plan.reserve_fund_cap

            ins.receivables_total = rcv
            ins.outstanding_balance = bal
            ins.reserve_fund = res
            ins.refund = ref

            _LOG.debug(f'installment #{ins.id} ({ins.installment_number}): received {rcv}, outstanding {bal}, reserve {res}, refund {ref}')

            out.append(self._backend.update_installment(ins))

        return out
# }}}

# Public API. Index correction engine. {{{
class IndexCorrector:
    '''
    Monthly index updates, and their compounding.

    Months without an update are absent from the product, i.e., count as 0%. That's a gap, not an error; it is logged.
    '''

    def __init__(self, backend: StorageBackend, settings: Settings) -> None:
        self._backend = backend
        self._settings = settings

    @typeguard.typechecked
    def add_index(self, name: str, description: str = '') -> Index:
        if not name.strip():
            raise ValidationError('index name is required')

        return self._backend.add_index(Index(name.strip(), description))

    @typeguard.typechecked
    def add_update(self, index_id: int, reference_month: datetime.date, monthly_adjustment: decimal.Decimal) -> IndexUpdate:
        '''Records the adjustment of a month. The day of "reference_month" is ignored.'''

        return self._backend.add_index_update(IndexUpdate(index_id, reference_month, monthly_adjustment))

    @typeguard.typechecked
    def compound_adjustment(self, index_id: int, start_month: datetime.date, end_month: datetime.date) -> CompoundAdjustment:
        '''
        Compounds the monthly adjustments of an index between two months.

        Days are ignored. By default the start month is the base of the correction and is excluded, while the end
        month is included: from January to April compounds February, March and April. "Settings.include_start_month"
        includes the start month too.

          factor = Π (1 + adjustment / 100)
          percentage = (factor - 1) × 100

        Compounding zero months yields a factor of one, and a percentage of zero.
        '''

        idx = self._backend.get_index(index_id)
        ini = _month_start(start_month)
        end = _month_start(end_month)

        if end < ini:
            raise ValidationError(f'end month {end:%Y-%m} precedes start month {ini:%Y-%m}')

        fst = ini if self._settings.include_start_month else ini + _MONTH
        mem = self._backend.get_index_updates(idx.id, fst, end) if fst <= end else []
        fac = calculate_compound_factor(mem)
        exp = _delta_months(end, fst) + 1 if fst <= end else 0

        if len(mem) < exp:
            _LOG.warning(f'{exp - len(mem)} of {exp} months without updates for index "{idx.name}" between {fst:%Y-%m} and {end:%Y-%m}, counted as 0%')

        return CompoundAdjustment(
            index_id=idx.id,
            start_month=ini,
            end_month=end,
            factor=fac,
            percentage=(fac - _1) * _100,
            applied_months=len(mem),
            months=mem
        )
# }}}

# Public API. Boletos. {{{
class BoletoDesk:
    '''
    Boletos for billing receivables.

    Emission and payment statuses are bound together by "derive_payment_status": only issued boletos have a payment
    status other than "NotApplicable". Status changes are compare-and-swaps.
    '''

    def __init__(self, backend: StorageBackend, corrector: IndexCorrector, ledger: CreditLedger, settings: Settings) -> None:
        self._backend = backend
        self._corrector = corrector
        self._ledger = ledger
        self._settings = settings

    def _create(self, billing_receivable_id: int, calc_date: datetime.date) -> Boleto:
        link = self._backend.get_billing_receivable(billing_receivable_id)

        if self._backend.get_boleto_for(link.id):
            raise ConflictError(f'billing receivable #{link.id} already has a boleto', link.receivable_id, link.installment_id)

        rec = self._backend.get_receivable(link.receivable_id)
        ins = self._backend.get_installment(link.installment_id)
        plan = self._backend.get_payment_plan(ins.plan_id)
        pct = None
        val = rec.amount

        if plan.index_id is not None and plan.adjustment_base_date is not None:
            pct = self._corrector.compound_adjustment(plan.index_id, plan.adjustment_base_date, calc_date).percentage
            val = calculate_billed_value(rec.amount, pct)

        return self._backend.add_boleto(Boleto(link.id, rec.amount, link.new_due_date, plan.index_id, pct, val))

    @typeguard.typechecked
    def create_boletos(self, billing_receivable_ids: t.Sequence[int], calc_date: t.Optional[datetime.date] = None) -> BoletoBatch:
        '''
        Creates one boleto per billing receivable.

        The face value is the receivable's amount, and the due date the billing receivable's. When the payment plan
        has an index, the face value is corrected from the plan's adjustment base month up to the calculation month,
        today by default.

        Items fail one by one; errors are reported in the returned batch.
        '''

        calc_date = datetime.date.today() if calc_date is None else calc_date
        out = BoletoBatch()

        for brid in billing_receivable_ids:
            try:
                out.created.append(self._create(brid, calc_date))

            except (NotFoundError, ValidationError, ConflictError) as exc:
                _LOG.warning(f'boleto not created for billing receivable #{brid}: {exc}')

                out.errors.append(RejectedItem(brid, exc))

        _LOG.info(f'{len(out.created)} boletos created, {len(out.errors)} refused')

        return out

    @typeguard.typechecked
    def get(self, boleto_id: int) -> Boleto:
        return self._backend.get_boleto(boleto_id)

    def _swap(self, bol: Boleto, emission_status: str, payment_status: str) -> Boleto:
        if not self._backend.swap_boleto_status(bol.id, (bol.emission_status, bol.payment_status), (emission_status, payment_status)):
            raise ConflictError(f'boleto #{bol.id} was changed concurrently')

        _LOG.info(f'boleto #{bol.id}: {bol.emission_status}/{bol.payment_status} -> {emission_status}/{payment_status}')

        return self._backend.get_boleto(bol.id)

    @typeguard.typechecked
    def set_emission_status(self, boleto_id: int, status: _EMISSION_STATUS) -> Boleto:
        '''
        Changes the emission status. The payment status follows, see "derive_payment_status".

        A paid boleto stays issued: canceling it would allow a second payment, and a second credit release.
        '''

        bol = self._backend.get_boleto(boleto_id)

        if bol.payment_status == 'Paid' and status != 'Issued':
            raise InvalidTransition(f'{bol.emission_status}/{bol.payment_status}', status, entity='boleto')

        return self._swap(bol, status, derive_payment_status(status, bol.payment_status))

    @typeguard.typechecked
    def apply_bank_event(self, boleto_id: int, event: _BANK_EVENT) -> Boleto:
        '''
        Applies a payment event from the issuing bank to an issued boleto.

        Paid is final: a paid boleto accepts only further payment events, which change nothing. The first time a
        boleto becomes paid, its face value goes back to the credit line of the company that anticipated it (see
        "Settings.release_credit_on_payment"). The payment is recorded even when the company has no active credit
        line; the release is then skipped with a warning.
        '''

        bol = self._backend.get_boleto(boleto_id)

        if bol.emission_status != 'Issued':
            raise ValidationError(f'boleto #{bol.id} is {bol.emission_status}, bank events only apply to issued boletos')

        pay = _BANK_EVENT_STATUS[event]

        if bol.payment_status == 'Paid':
            if pay != 'Paid':
                raise InvalidTransition(bol.payment_status, pay, entity='boleto')

            return bol

        new = self._swap(bol, bol.emission_status, pay)

        if pay == 'Paid' and self._settings.release_credit_on_payment:
            link = self._backend.get_billing_receivable(bol.billing_receivable_id)
            ins = self._backend.get_installment(link.installment_id)
            ant = self._backend.get_anticipation(self._backend.get_payment_plan(ins.plan_id).anticipation_id)

            try:
                self._ledger.release(ant.company_id, bol.face_value)

            except NotFoundError as exc:
                _LOG.warning(f'boleto #{bol.id} paid, but its face value {bol.face_value} was not released: {exc}')

        return new
# }}}

# Public API. Engine. {{{
class Engine:
    '''
    The services of this module, wired around a single storage backend.

      • "credit", the credit ledger, CreditLedger.

      • "anticipation", the anticipation life cycle, AnticipationLifecycle.

      • "installment", installment reconciliation, InstallmentReconciler.

      • "index", the index correction engine, IndexCorrector.

      • "boleto", boletos, BoletoDesk.

    With no arguments, an in-memory backend and default settings are used.

    >>> engine = Engine()
    >>> engine.credit.get_active_line(1)  # doctest: +IGNORE_EXCEPTION_DETAIL
    Traceback (most recent call last):
        ...
    antecipa.NotFoundError: company #1 has no active credit line
    '''

    def __init__(self, backend: t.Optional[StorageBackend] = None, settings: t.Optional[Settings] = None) -> None:
        self.backend = InMemoryBackend() if backend is None else backend
        self.settings = Settings() if settings is None else settings

        self.credit = CreditLedger(self.backend)
        self.anticipation = AnticipationLifecycle(self.backend, self.credit)
        self.installment = InstallmentReconciler(self.backend, self.settings)
        self.index = IndexCorrector(self.backend, self.settings)
        self.boleto = BoletoDesk(self.backend, self.index, self.credit, self.settings)
# }}}

# Log current version info.
_LOG.info(f'Antecipa version {__version__} initialized')

if __name__ == '__main__':
    import doctest

    doctest.testmod()

# vi:fdm=marker:
